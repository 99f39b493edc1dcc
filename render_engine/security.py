from __future__ import annotations

import time
import uuid
from dataclasses import dataclass
from typing import Any

import jwt
from sqlalchemy.orm import Session

from render_engine.cache.entities import EntityCaches
from render_engine.errors import EngineError
from render_engine.schemas import AccessContext
from render_engine.services.rbac import RbacService
from render_engine.settings import get_settings

_settings = get_settings()


@dataclass(slots=True)
class TokenClaims:
    subject: str
    token_id: str
    expires_at: int | None


def decode_access_token(token: str) -> TokenClaims:
    options: dict[str, Any] = {"require": ["sub", "jti", "exp"]}
    try:
        payload = jwt.decode(
            token,
            _settings.jwt_secret,
            algorithms=[_settings.jwt_algorithm],
            issuer=_settings.jwt_issuer,
            options=options,
        )
    except jwt.ExpiredSignatureError as exc:
        raise EngineError(status_code=401, code="invalid_token", message="Access token expired") from exc
    except jwt.InvalidTokenError as exc:
        raise EngineError(status_code=401, code="invalid_token", message="Invalid access token") from exc
    return TokenClaims(subject=str(payload["sub"]), token_id=str(payload["jti"]), expires_at=payload.get("exp"))


def parse_bearer(authorization: str | None) -> str:
    if not authorization:
        raise EngineError(status_code=401, code="missing_token", message="Missing access token")
    scheme, _, raw_token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not raw_token:
        raise EngineError(status_code=401, code="invalid_token", message="Invalid authorization header")
    return raw_token


async def resolve_access_context(authorization: str | None, *, db: Session, caches: EntityCaches) -> AccessContext:
    claims = decode_access_token(parse_bearer(authorization))
    rbac = RbacService(db, caches)
    if await rbac.is_token_blacklisted(claims.token_id):
        raise EngineError(status_code=401, code="token_revoked", message="Access token has been revoked")
    return await rbac.get_access_context(claims.subject)


def mint_access_token(*, subject: str, secret: str, algorithm: str = "HS256", ttl_seconds: int = 900, token_id: str | None = None, issuer: str | None = None) -> str:
    now = int(time.time())
    payload: dict[str, Any] = {
        "sub": subject,
        "jti": token_id or uuid.uuid4().hex,
        "iat": now,
        "exp": now + ttl_seconds,
    }
    if issuer:
        payload["iss"] = issuer
    return jwt.encode(payload, secret, algorithm=algorithm)
