from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.cms.models import Base
from app.cms.tenancy import TENANT_SCHEMA


class Form(Base):
    __tablename__ = "forms"
    __table_args__ = {"schema": TENANT_SCHEMA}

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # [{"name": "email", "label": "Email", "type": "email", "required": true}, ...]
    fields: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    auto_assign_tags: Mapped[list | None] = mapped_column(JSON, nullable=True)
    auto_assign_mag_ids: Mapped[list | None] = mapped_column(JSON, nullable=True)
    auto_assign_list_ids: Mapped[list | None] = mapped_column(JSON, nullable=True)
    settings: Mapped[dict | None] = mapped_column(JSON, nullable=True)  # e.g. {"success_message": "..."}

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    @property
    def success_message(self) -> str:
        return str((self.settings or {}).get("success_message") or "Thank you for your submission!")


class FormSubmission(Base):
    __tablename__ = "form_submissions"
    __table_args__ = (
        Index("idx_form_submissions_form", "form_id"),
        {"schema": TENANT_SCHEMA},
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    form_id: Mapped[int] = mapped_column(ForeignKey(f"{TENANT_SCHEMA}.forms.id", ondelete="CASCADE"), nullable=False)
    contact_id: Mapped[int | None] = mapped_column(
        ForeignKey(f"{TENANT_SCHEMA}.crm_contacts.id", ondelete="SET NULL"), nullable=True
    )
    data: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="new")  # new, reviewed, archived
    ip_address: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    form: Mapped[Form] = relationship(lazy="selectin")
