from sqlalchemy import Column, Integer, String, DateTime, Boolean, Text, JSON, ForeignKey, Index
from sqlalchemy.orm import relationship
from datetime import datetime
from render_engine.database import Base


class User(Base):
    __tablename__ = "users"

    user_id = Column(String(36), primary_key=True, index=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    first_name = Column(String(255))
    last_name = Column(String(255))
    provider_uid = Column(Integer, nullable=True, index=True)
    is_super_admin = Column(Boolean, default=False)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    roles = relationship("UserRole", back_populates="user", cascade="all, delete-orphan")
    organizations = relationship("UserOrganization", back_populates="user", cascade="all, delete-orphan")


class Organization(Base):
    __tablename__ = "organizations"

    organization_id = Column(String(36), primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    parent_organization_id = Column(String(36), ForeignKey("organizations.organization_id"), nullable=True, index=True)
    practice_uids = Column(JSON, default=list)  # Analytics practice_uid values owned by this org
    is_active = Column(Boolean, default=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)


class Role(Base):
    __tablename__ = "roles"

    role_id = Column(String(36), primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    organization_id = Column(String(36), ForeignKey("organizations.organization_id"), nullable=True)
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    permissions = relationship("RolePermission", back_populates="role", cascade="all, delete-orphan")


class Permission(Base):
    __tablename__ = "permissions"

    permission_id = Column(String(36), primary_key=True, index=True)
    name = Column(String(255), unique=True, nullable=False)  # e.g. analytics:read:organization
    description = Column(Text)
    is_active = Column(Boolean, default=True)


class RolePermission(Base):
    __tablename__ = "role_permissions"

    role_id = Column(String(36), ForeignKey("roles.role_id", ondelete="CASCADE"), primary_key=True)
    permission_id = Column(String(36), ForeignKey("permissions.permission_id", ondelete="CASCADE"), primary_key=True)

    role = relationship("Role", back_populates="permissions")
    permission = relationship("Permission")


class UserRole(Base):
    __tablename__ = "user_roles"

    user_role_id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(36), ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False)
    role_id = Column(String(36), ForeignKey("roles.role_id", ondelete="CASCADE"), nullable=False)
    is_active = Column(Boolean, default=True)

    user = relationship("User", back_populates="roles")
    role = relationship("Role")

    __table_args__ = (Index("user_roles_user_idx", "user_id"), Index("user_roles_role_idx", "role_id"))


class UserOrganization(Base):
    __tablename__ = "user_organizations"

    user_organization_id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(36), ForeignKey("users.user_id", ondelete="CASCADE"), nullable=False)
    organization_id = Column(String(36), ForeignKey("organizations.organization_id", ondelete="CASCADE"), nullable=False)
    is_active = Column(Boolean, default=True)

    user = relationship("User", back_populates="organizations")
    organization = relationship("Organization")

    __table_args__ = (Index("user_organizations_user_idx", "user_id"),)


class TokenBlacklist(Base):
    __tablename__ = "token_blacklist"

    jti = Column(String(255), primary_key=True)
    user_id = Column(String(36), ForeignKey("users.user_id", ondelete="CASCADE"), nullable=True, index=True)
    reason = Column(String(255))
    blacklisted_at = Column(DateTime, default=datetime.utcnow)
    expires_at = Column(DateTime, nullable=True, index=True)


class ChartDataSource(Base):
    """Analytics table a chart reads from."""
    __tablename__ = "chart_data_sources"

    data_source_id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False)
    schema_name = Column(String(255), nullable=False, default="ih")
    table_name = Column(String(255), nullable=False, default="agg_app_measures")
    is_active = Column(Boolean, default=True)


class ChartDefinition(Base):
    __tablename__ = "chart_definitions"

    chart_definition_id = Column(String(36), primary_key=True, index=True)
    chart_name = Column(String(255), nullable=False)
    chart_type = Column(String(50), nullable=False)
    data_source_id = Column(Integer, ForeignKey("chart_data_sources.data_source_id"), nullable=True)
    data_source = Column(JSON, default=dict)  # {"filters": [...], "advancedFilters": [...]}
    chart_config = Column(JSON, default=dict)  # {"series": {"groupBy", "colorPalette"}, "stackingMode", ...}
    is_active = Column(Boolean, default=True, index=True)
    created_by = Column(String(36), ForeignKey("users.user_id"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class Dashboard(Base):
    __tablename__ = "dashboards"

    dashboard_id = Column(String(36), primary_key=True, index=True)
    dashboard_name = Column(String(255), nullable=False)
    organization_id = Column(String(36), ForeignKey("organizations.organization_id"), nullable=True)
    created_by = Column(String(36), ForeignKey("users.user_id"), nullable=True)
    is_published = Column(Boolean, default=False)
    is_active = Column(Boolean, default=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    charts = relationship(
        "DashboardChart",
        back_populates="dashboard",
        cascade="all, delete-orphan",
        order_by="DashboardChart.sort_order",
    )


class DashboardChart(Base):
    __tablename__ = "dashboard_charts"

    dashboard_chart_id = Column(Integer, primary_key=True, autoincrement=True)
    dashboard_id = Column(String(36), ForeignKey("dashboards.dashboard_id", ondelete="CASCADE"), nullable=False)
    chart_definition_id = Column(String(36), ForeignKey("chart_definitions.chart_definition_id"), nullable=False)
    sort_order = Column(Integer, default=0)
    position_config = Column(JSON, default=dict)

    dashboard = relationship("Dashboard", back_populates="charts")
    chart = relationship("ChartDefinition")

    __table_args__ = (Index("dashboard_charts_dashboard_idx", "dashboard_id"),)
