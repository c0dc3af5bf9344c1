from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.cms.models import Base
from app.cms.tenancy import TENANT_SCHEMA


class ContentType(Base):
    __tablename__ = "content_types"
    __table_args__ = {"schema": TENANT_SCHEMA}

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    slug: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)  # post, page, ...
    label: Mapped[str] = mapped_column(String(128), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_core: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    display_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class Content(Base):
    __tablename__ = "content"
    __table_args__ = (
        UniqueConstraint("content_type_id", "slug", name="uq_content_type_slug"),
        Index("idx_content_status", "status"),
        {"schema": TENANT_SCHEMA},
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    content_type_id: Mapped[int] = mapped_column(
        ForeignKey(f"{TENANT_SCHEMA}.content_types.id", ondelete="RESTRICT"), nullable=False
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), nullable=False)
    body: Mapped[str | None] = mapped_column(Text, nullable=True)
    excerpt: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="draft")  # draft, published, archived
    published_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    # Membership gating
    access_level: Mapped[str] = mapped_column(String(16), nullable=False, default="public")  # public, members, mag
    required_mag_id: Mapped[int | None] = mapped_column(
        ForeignKey(f"{TENANT_SCHEMA}.mags.id", ondelete="SET NULL"), nullable=True
    )
    visibility_mode: Mapped[str] = mapped_column(String(16), nullable=False, default="hidden")  # hidden, message
    restricted_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    content_type: Mapped[ContentType] = relationship(lazy="selectin")
