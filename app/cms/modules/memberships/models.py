from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.cms.models import Base
from app.cms.tenancy import TENANT_SCHEMA

if TYPE_CHECKING:
    from app.cms.modules.crm.models import CrmContact


class Mag(Base):
    """Membership/access group."""

    __tablename__ = "mags"
    __table_args__ = {"schema": TENANT_SCHEMA}

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    uid: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active")  # active, draft
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class ContactMag(Base):
    __tablename__ = "crm_contact_mags"
    __table_args__ = (
        UniqueConstraint("contact_id", "mag_id", name="uq_contact_mag"),
        {"schema": TENANT_SCHEMA},
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    contact_id: Mapped[int] = mapped_column(
        ForeignKey(f"{TENANT_SCHEMA}.crm_contacts.id", ondelete="CASCADE"), nullable=False
    )
    mag_id: Mapped[int] = mapped_column(ForeignKey(f"{TENANT_SCHEMA}.mags.id", ondelete="CASCADE"), nullable=False)
    assigned_via: Mapped[str] = mapped_column(String(32), nullable=False, default="admin")  # admin, code, form, signup
    assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    contact: Mapped["CrmContact"] = relationship("CrmContact", back_populates="mags")
    mag: Mapped[Mag] = relationship(lazy="selectin")


class Member(Base):
    """Links a member account to its CRM contact."""

    __tablename__ = "members"
    __table_args__ = {"schema": TENANT_SCHEMA}

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True)
    contact_id: Mapped[int] = mapped_column(
        ForeignKey(f"{TENANT_SCHEMA}.crm_contacts.id", ondelete="CASCADE"), nullable=False
    )
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    contact: Mapped["CrmContact"] = relationship("CrmContact", lazy="selectin")


class MembershipCodeBatch(Base):
    __tablename__ = "membership_code_batches"
    __table_args__ = {"schema": TENANT_SCHEMA}

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    mag_id: Mapped[int] = mapped_column(ForeignKey(f"{TENANT_SCHEMA}.mags.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    use_type: Mapped[str] = mapped_column(String(16), nullable=False, default="single_use")  # single_use, multi_use

    # Multi-use batches keep one shared code on the batch row itself.
    code_hash: Mapped[str | None] = mapped_column(String(64), nullable=True, unique=True)
    code_plain: Mapped[str | None] = mapped_column(String(128), nullable=True)
    max_uses: Mapped[int | None] = mapped_column(Integer, nullable=True)
    use_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    prefix: Mapped[str | None] = mapped_column(String(32), nullable=True)
    suffix: Mapped[str | None] = mapped_column(String(32), nullable=True)
    random_length: Mapped[int] = mapped_column(Integer, nullable=False, default=8)
    exclude_chars: Mapped[str | None] = mapped_column(String(64), nullable=True)

    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    mag: Mapped[Mag] = relationship(lazy="selectin")

    @property
    def is_expired(self) -> bool:
        return self.expires_at is not None and self.expires_at < datetime.utcnow()


class MembershipCode(Base):
    """One single-use code. Looked up by ``code_hash``; ``code_plain`` is only for the batch explorer."""

    __tablename__ = "membership_codes"
    __table_args__ = (
        Index("idx_membership_codes_batch", "batch_id"),
        {"schema": TENANT_SCHEMA},
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    batch_id: Mapped[int] = mapped_column(
        ForeignKey(f"{TENANT_SCHEMA}.membership_code_batches.id", ondelete="CASCADE"), nullable=False
    )
    code_hash: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    code_plain: Mapped[str | None] = mapped_column(String(128), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="available")  # available, redeemed
    redeemed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    redeemed_by_member_id: Mapped[int | None] = mapped_column(
        ForeignKey(f"{TENANT_SCHEMA}.members.id", ondelete="SET NULL"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    batch: Mapped[MembershipCodeBatch] = relationship(lazy="selectin")


class MembershipCodeRedemption(Base):
    """One use of a multi-use code."""

    __tablename__ = "membership_code_redemptions"
    __table_args__ = {"schema": TENANT_SCHEMA}

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    batch_id: Mapped[int] = mapped_column(
        ForeignKey(f"{TENANT_SCHEMA}.membership_code_batches.id", ondelete="CASCADE"), nullable=False
    )
    member_id: Mapped[int] = mapped_column(ForeignKey(f"{TENANT_SCHEMA}.members.id", ondelete="CASCADE"), nullable=False)
    contact_id: Mapped[int | None] = mapped_column(
        ForeignKey(f"{TENANT_SCHEMA}.crm_contacts.id", ondelete="SET NULL"), nullable=True
    )
    redeemed_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
