from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.orm import Session

from render_engine.cache.entities import EntityCaches
from render_engine.errors import EngineError
from render_engine.models import Organization, Permission, Role, RolePermission, TokenBlacklist, User, UserOrganization, UserRole
from render_engine.schemas import AccessContext, OrganizationInfo, RoleInfo, UserBasicInfo, UserContext

logger = logging.getLogger("uvicorn.error")

PERMISSION_ANALYTICS_ALL = "analytics:read:all"
PERMISSION_ANALYTICS_ORGANIZATION = "analytics:read:organization"
PERMISSION_ANALYTICS_OWN = "analytics:read:own"


def descendant_organization_ids(db: Session, organization_id: str) -> list[str]:
    """Return the organization and all of its active descendants, breadth first."""
    rows = db.query(Organization.organization_id, Organization.parent_organization_id).filter(Organization.is_active.is_(True)).all()
    children: dict[str, list[str]] = {}
    for child_id, parent_id in rows:
        if parent_id:
            children.setdefault(parent_id, []).append(child_id)

    ordered: list[str] = [organization_id]
    seen = {organization_id}
    index = 0
    while index < len(ordered):
        for child_id in children.get(ordered[index], []):
            if child_id not in seen:
                seen.add(child_id)
                ordered.append(child_id)
        index += 1
    return ordered


def organization_practice_uids(db: Session, organization_ids: list[str]) -> list[int]:
    if not organization_ids:
        return []
    rows = (
        db.query(Organization.practice_uids)
        .filter(Organization.organization_id.in_(organization_ids), Organization.is_active.is_(True))
        .all()
    )
    practice_uids: set[int] = set()
    for (values,) in rows:
        practice_uids.update(int(value) for value in values or [])
    return sorted(practice_uids)


def derive_access_context(user_context: UserContext, *, accessible_practice_uids: list[int] | None = None) -> AccessContext:
    permissions = user_context.permission_names
    is_super_admin = PERMISSION_ANALYTICS_ALL in permissions
    if is_super_admin:
        scope = "all"
    elif PERMISSION_ANALYTICS_ORGANIZATION in permissions:
        scope = "organization"
    elif PERMISSION_ANALYTICS_OWN in permissions:
        scope = "own"
    else:
        scope = "none"

    if accessible_practice_uids is None:
        accessible_practice_uids = sorted({uid for org in user_context.organizations for uid in org.practice_uids})
    return AccessContext(
        user_id=user_context.user_id,
        permission_scope=scope,
        accessible_practice_uids=accessible_practice_uids if scope == "organization" else [],
        provider_uid=user_context.user.provider_uid if scope == "own" else None,
        organization_ids=[org.organization_id for org in user_context.organizations],
        is_super_admin=is_super_admin,
    )


class RbacService:
    """User, role and token lookups routed through the entity caches.

    Every lookup has a database compute path, so an unavailable cache only
    costs latency.
    """

    def __init__(self, db: Session, caches: EntityCaches) -> None:
        self._db = db
        self._caches = caches

    async def get_user_basic(self, user_id: str) -> UserBasicInfo | None:
        async def _compute() -> UserBasicInfo | None:
            user = self._db.query(User).filter(User.user_id == user_id).first()
            if user is None:
                return None
            return UserBasicInfo(
                user_id=user.user_id,
                email=user.email,
                first_name=user.first_name,
                last_name=user.last_name,
                is_active=bool(user.is_active),
                provider_uid=user.provider_uid,
            )

        lookup = await self._caches.user_basic.get_or_compute(user_id, _compute)
        return lookup.value

    async def get_role_permissions(self, role_id: str) -> list[str]:
        async def _compute() -> list[str]:
            rows = (
                self._db.query(Permission.name)
                .join(RolePermission, RolePermission.permission_id == Permission.permission_id)
                .filter(RolePermission.role_id == role_id, Permission.is_active.is_(True))
                .all()
            )
            return sorted(name for (name,) in rows)

        lookup = await self._caches.role_permissions.get_or_compute(role_id, _compute)
        return lookup.value

    async def get_user_context(self, user_id: str) -> UserContext:
        async def _compute() -> UserContext | None:
            return await self._build_user_context(user_id)

        lookup = await self._caches.user_context.get_or_compute(user_id, _compute)
        if lookup.value is None:
            raise EngineError(status_code=401, code="user_not_found", message="User not found")
        if not lookup.value.user.is_active:
            raise EngineError(status_code=401, code="user_inactive", message="User account is inactive")
        return lookup.value

    async def get_access_context(self, user_id: str) -> AccessContext:
        user_context = await self.get_user_context(user_id)
        access = derive_access_context(user_context, accessible_practice_uids=[])
        if access.permission_scope == "organization":
            org_ids: list[str] = []
            for organization in user_context.organizations:
                for org_id in descendant_organization_ids(self._db, organization.organization_id):
                    if org_id not in org_ids:
                        org_ids.append(org_id)
            access.accessible_practice_uids = organization_practice_uids(self._db, org_ids)
        return access

    async def is_token_blacklisted(self, jti: str) -> bool:
        async def _compute() -> bool:
            row = self._db.query(TokenBlacklist).filter(TokenBlacklist.jti == jti).first()
            if row is None:
                return False
            return row.expires_at is None or row.expires_at > datetime.utcnow()

        lookup = await self._caches.token_blacklist.get_or_compute(jti, _compute)
        return lookup.value

    async def blacklist_token(self, jti: str, *, user_id: str | None = None, reason: str | None = None, expires_at: datetime | None = None) -> None:
        row = self._db.query(TokenBlacklist).filter(TokenBlacklist.jti == jti).first()
        if row is None:
            row = TokenBlacklist(jti=jti, user_id=user_id, reason=reason, expires_at=expires_at)
            self._db.add(row)
        else:
            row.reason = reason or row.reason
            row.expires_at = expires_at
        self._db.commit()
        await self._caches.token_blacklist.invalidate(jti)

    async def invalidate_role(self, role_id: str) -> list[str]:
        """Drop a role's permissions and the contexts of every user holding it."""
        user_ids = [
            user_id
            for (user_id,) in self._db.query(UserRole.user_id).filter(UserRole.role_id == role_id).distinct().all()
        ]
        await self._caches.role_permissions.invalidate(role_id)
        await self._caches.user_context.invalidate(*user_ids)
        return user_ids

    async def invalidate_user(self, user_id: str) -> None:
        await self._caches.user_context.invalidate(user_id)
        await self._caches.user_basic.invalidate(user_id)

    async def _build_user_context(self, user_id: str) -> UserContext | None:
        user = await self.get_user_basic(user_id)
        if user is None:
            return None

        role_rows = (
            self._db.query(Role)
            .join(UserRole, UserRole.role_id == Role.role_id)
            .filter(UserRole.user_id == user_id, UserRole.is_active.is_(True), Role.is_active.is_(True))
            .all()
        )
        roles: list[RoleInfo] = []
        for role in role_rows:
            roles.append(
                RoleInfo(
                    role_id=role.role_id,
                    name=role.name,
                    organization_id=role.organization_id,
                    permissions=await self.get_role_permissions(role.role_id),
                )
            )

        is_super_admin = bool(self._db.query(User.is_super_admin).filter(User.user_id == user_id).scalar())
        if is_super_admin and not any(PERMISSION_ANALYTICS_ALL in role.permissions for role in roles):
            roles.append(RoleInfo(role_id="super_admin", name="super_admin", permissions=[PERMISSION_ANALYTICS_ALL]))

        org_rows = (
            self._db.query(Organization)
            .join(UserOrganization, UserOrganization.organization_id == Organization.organization_id)
            .filter(
                UserOrganization.user_id == user_id,
                UserOrganization.is_active.is_(True),
                Organization.is_active.is_(True),
            )
            .all()
        )
        organizations = [
            OrganizationInfo(
                organization_id=org.organization_id,
                name=org.name,
                parent_organization_id=org.parent_organization_id,
                practice_uids=[int(value) for value in org.practice_uids or []],
            )
            for org in org_rows
        ]
        logger.debug("rbac.user_context.built | %s", {"user_id": user_id, "roles": len(roles), "organizations": len(organizations)})
        return UserContext(user=user, roles=roles, organizations=organizations)
