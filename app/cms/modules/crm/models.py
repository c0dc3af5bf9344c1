from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.cms.models import Base
from app.cms.tenancy import TENANT_SCHEMA

if TYPE_CHECKING:
    from app.cms.modules.memberships.models import ContactMag


class CrmContact(Base):
    __tablename__ = "crm_contacts"
    __table_args__ = (
        Index("idx_crm_contacts_email", "email"),
        Index("idx_crm_contacts_status", "status"),
        Index("idx_crm_contacts_deleted_at", "deleted_at"),
        {"schema": TENANT_SCHEMA},
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)

    email: Mapped[str | None] = mapped_column(String(320), nullable=True)  # normalized lowercase
    phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    first_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    last_name: Mapped[str | None] = mapped_column(String(128), nullable=True)
    full_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    company: Mapped[str | None] = mapped_column(String(255), nullable=True)

    address: Mapped[str | None] = mapped_column(String(255), nullable=True)
    city: Mapped[str | None] = mapped_column(String(128), nullable=True)
    state: Mapped[str | None] = mapped_column(String(64), nullable=True)
    postal_code: Mapped[str | None] = mapped_column(String(32), nullable=True)
    country: Mapped[str | None] = mapped_column(String(64), nullable=True)

    status: Mapped[str] = mapped_column(String(64), nullable=False, default="new")
    dnd_status: Mapped[str | None] = mapped_column(String(32), nullable=True)  # e.g. "email", "all"
    source: Mapped[str | None] = mapped_column(String(64), nullable=True)  # form, member_signup, manual, import
    form_id: Mapped[int | None] = mapped_column(ForeignKey(f"{TENANT_SCHEMA}.forms.id", ondelete="SET NULL"), nullable=True)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    external_crm_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    notes: Mapped[list["CrmNote"]] = relationship(
        back_populates="contact",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="CrmNote.created_at.desc()",
    )
    custom_values: Mapped[list["ContactCustomFieldValue"]] = relationship(
        back_populates="contact",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    list_memberships: Mapped[list["ContactMarketingList"]] = relationship(
        back_populates="contact",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    mags: Mapped[list["ContactMag"]] = relationship(
        "ContactMag",
        back_populates="contact",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @property
    def display_name(self) -> str:
        if self.full_name:
            return self.full_name
        parts = [p for p in (self.first_name, self.last_name) if p]
        return " ".join(parts) or self.email or f"Contact #{self.id}"


class CrmNote(Base):
    __tablename__ = "crm_notes"
    __table_args__ = (
        Index("idx_crm_notes_contact", "contact_id"),
        {"schema": TENANT_SCHEMA},
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    contact_id: Mapped[int] = mapped_column(
        ForeignKey(f"{TENANT_SCHEMA}.crm_contacts.id", ondelete="CASCADE"), nullable=False
    )
    body: Mapped[str] = mapped_column(Text, nullable=False)
    note_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    contact: Mapped[CrmContact] = relationship(back_populates="notes")


class CrmCustomField(Base):
    __tablename__ = "crm_custom_fields"
    __table_args__ = {"schema": TENANT_SCHEMA}

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)  # machine name, e.g. "tshirt_size"
    label: Mapped[str] = mapped_column(String(128), nullable=False)
    field_type: Mapped[str] = mapped_column(String(32), nullable=False, default="text")
    options: Mapped[list | None] = mapped_column(JSON, nullable=True)  # select choices
    is_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    display_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class ContactCustomFieldValue(Base):
    __tablename__ = "crm_contact_custom_fields"
    __table_args__ = (
        UniqueConstraint("contact_id", "custom_field_id", name="uq_contact_custom_field"),
        {"schema": TENANT_SCHEMA},
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    contact_id: Mapped[int] = mapped_column(
        ForeignKey(f"{TENANT_SCHEMA}.crm_contacts.id", ondelete="CASCADE"), nullable=False
    )
    custom_field_id: Mapped[int] = mapped_column(
        ForeignKey(f"{TENANT_SCHEMA}.crm_custom_fields.id", ondelete="CASCADE"), nullable=False
    )
    value: Mapped[str | None] = mapped_column(Text, nullable=True)

    contact: Mapped[CrmContact] = relationship(back_populates="custom_values")
    field: Mapped[CrmCustomField] = relationship(lazy="selectin")


class MarketingList(Base):
    __tablename__ = "marketing_lists"
    __table_args__ = {"schema": TENANT_SCHEMA}

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    members: Mapped[list["ContactMarketingList"]] = relationship(
        back_populates="marketing_list",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class ContactMarketingList(Base):
    __tablename__ = "crm_contact_marketing_lists"
    __table_args__ = (
        UniqueConstraint("contact_id", "list_id", name="uq_contact_marketing_list"),
        {"schema": TENANT_SCHEMA},
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    contact_id: Mapped[int] = mapped_column(
        ForeignKey(f"{TENANT_SCHEMA}.crm_contacts.id", ondelete="CASCADE"), nullable=False
    )
    list_id: Mapped[int] = mapped_column(
        ForeignKey(f"{TENANT_SCHEMA}.marketing_lists.id", ondelete="CASCADE"), nullable=False
    )
    added_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    contact: Mapped[CrmContact] = relationship(back_populates="list_memberships", lazy="selectin")
    marketing_list: Mapped[MarketingList] = relationship(back_populates="members", lazy="selectin")
