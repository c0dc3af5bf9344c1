from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


# ---------- Platform tables (shared by every tenant) ----------


class User(Base):
    """Login account. ``user_type`` is superadmin, admin (tenant staff) or member (public site)."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    user_type: Mapped[str] = mapped_column(String(32), nullable=False, default="admin")
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    assignments: Mapped[list["TenantUserAssignment"]] = relationship(
        back_populates="user",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @property
    def is_superadmin(self) -> bool:
        return self.user_type == "superadmin"

    @property
    def is_member(self) -> bool:
        return self.user_type == "member"


class UserProfile(Base):
    """Optional profile details shown in the admin console; one row per user, created on first save."""

    __tablename__ = "user_profiles"

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    avatar_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    company: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    bio: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class TenantSite(Base):
    __tablename__ = "tenant_sites"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    schema_name: Mapped[str] = mapped_column(String(63), nullable=False, unique=True)
    deployment_url: Mapped[str | None] = mapped_column(String(512), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active")  # active, inactive, archived

    site_mode: Mapped[str] = mapped_column(String(32), nullable=False, default="coming_soon")  # live, coming_soon
    site_mode_locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    site_mode_locked_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    site_mode_locked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    site_mode_locked_reason: Mapped[str | None] = mapped_column(String(512), nullable=True)
    coming_soon_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    coming_soon_snippet_id: Mapped[int | None] = mapped_column(
        ForeignKey("code_snippets.id", ondelete="SET NULL"), nullable=True
    )

    membership_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    github_repo: Mapped[str | None] = mapped_column(String(512), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    assignments: Mapped[list["TenantUserAssignment"]] = relationship(
        back_populates="tenant_site",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class AdminRole(Base):
    __tablename__ = "admin_roles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    slug: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)  # e.g. "admin"
    label: Mapped[str] = mapped_column(String(128), nullable=False)  # display name
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_system: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class Feature(Base):
    """Feature registry entry. Slugs gate admin sections; children inherit from their parent."""

    __tablename__ = "feature_registry"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    slug: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)  # e.g. "contacts"
    label: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    parent_id: Mapped[int | None] = mapped_column(ForeignKey("feature_registry.id", ondelete="SET NULL"), nullable=True)
    display_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class RoleFeature(Base):
    __tablename__ = "role_features"
    __table_args__ = (UniqueConstraint("role_slug", "feature_id", name="uq_role_features_role_feature"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    role_slug: Mapped[str] = mapped_column(ForeignKey("admin_roles.slug", ondelete="CASCADE"), nullable=False)
    feature_id: Mapped[int] = mapped_column(ForeignKey("feature_registry.id", ondelete="CASCADE"), nullable=False)
    is_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)


class TenantFeature(Base):
    """Feature slugs a superadmin has switched on for one tenant site."""

    __tablename__ = "tenant_features"
    __table_args__ = (UniqueConstraint("tenant_site_id", "feature_slug", name="uq_tenant_features_site_slug"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tenant_site_id: Mapped[int] = mapped_column(ForeignKey("tenant_sites.id", ondelete="CASCADE"), nullable=False)
    feature_slug: Mapped[str] = mapped_column(String(64), nullable=False)


class TenantUserAssignment(Base):
    __tablename__ = "tenant_user_assignments"
    __table_args__ = (UniqueConstraint("user_id", "tenant_site_id", name="uq_assignment_user_site"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    tenant_site_id: Mapped[int] = mapped_column(ForeignKey("tenant_sites.id", ondelete="CASCADE"), nullable=False)
    role_slug: Mapped[str] = mapped_column(ForeignKey("admin_roles.slug", ondelete="RESTRICT"), nullable=False)
    is_owner: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    user: Mapped[User] = relationship(back_populates="assignments", lazy="selectin")
    tenant_site: Mapped[TenantSite] = relationship(back_populates="assignments", lazy="selectin")


class CodeSnippet(Base):
    __tablename__ = "code_snippets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[str | None] = mapped_column(String(64), nullable=True)  # e.g. "coming_soon", "html", "css"
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    code: Mapped[str] = mapped_column(Text, nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class AuditEvent(Base):
    """
    Append-only audit trail event.
    Keep this table intentionally generic; module-specific tables can refer to it by id if needed.
    """

    __tablename__ = "audit_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    request_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    tenant_schema: Mapped[str | None] = mapped_column(String(63), nullable=True)

    actor_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    actor_user_email: Mapped[str | None] = mapped_column(String(320), nullable=True)

    action: Mapped[str] = mapped_column(String(128), nullable=False)  # e.g. "crm.contact.create"
    entity_type: Mapped[str | None] = mapped_column(String(128), nullable=True)  # e.g. "CrmContact"
    entity_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    reason: Mapped[str | None] = mapped_column(String(512), nullable=True)
    metadata_json: Mapped[str | None] = mapped_column(Text, nullable=True)  # small JSON string
    client_ip: Mapped[str | None] = mapped_column(String(64), nullable=True)


# Ensure module models are imported so Base.metadata includes their tables.
# (Kept at bottom to avoid circular imports.)
from app.cms.modules.settings.models import TenantSetting  # noqa: E402,F401
from app.cms.modules.crm.models import (  # noqa: E402,F401
    ContactCustomFieldValue,
    ContactMarketingList,
    CrmContact,
    CrmCustomField,
    CrmNote,
    MarketingList,
)
from app.cms.modules.memberships.models import (  # noqa: E402,F401
    ContactMag,
    Mag,
    Member,
    MembershipCode,
    MembershipCodeBatch,
    MembershipCodeRedemption,
)
from app.cms.modules.forms.models import Form, FormSubmission  # noqa: E402,F401
from app.cms.modules.content.models import Content, ContentType  # noqa: E402,F401
from app.cms.modules.media.models import Gallery, GalleryItem, GalleryMag, Media, MediaMag  # noqa: E402,F401
from app.cms.modules.events.models import Event, EventParticipant, EventResource, Participant, Resource  # noqa: E402,F401
