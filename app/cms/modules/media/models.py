from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.cms.models import Base
from app.cms.tenancy import TENANT_SCHEMA


class Media(Base):
    __tablename__ = "media"
    __table_args__ = (
        Index("idx_media_type", "media_type"),
        {"schema": TENANT_SCHEMA},
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    media_type: Mapped[str] = mapped_column(String(16), nullable=False, default="image")  # image, video, document, other
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    storage_key: Mapped[str | None] = mapped_column(String(512), nullable=True, unique=True)  # None for video URLs
    video_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    content_type: Mapped[str | None] = mapped_column(String(128), nullable=True)
    size_bytes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sha256: Mapped[str | None] = mapped_column(String(64), nullable=True)
    title: Mapped[str | None] = mapped_column(String(255), nullable=True)
    alt_text: Mapped[str | None] = mapped_column(String(512), nullable=True)
    caption: Mapped[str | None] = mapped_column(Text, nullable=True)

    uploaded_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    mag_links: Mapped[list["MediaMag"]] = relationship(
        back_populates="media",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @property
    def mag_ids(self) -> list[int]:
        return sorted(link.mag_id for link in self.mag_links)


class MediaMag(Base):
    __tablename__ = "media_mags"
    __table_args__ = (
        UniqueConstraint("media_id", "mag_id", name="uq_media_mag"),
        {"schema": TENANT_SCHEMA},
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    media_id: Mapped[int] = mapped_column(ForeignKey(f"{TENANT_SCHEMA}.media.id", ondelete="CASCADE"), nullable=False)
    mag_id: Mapped[int] = mapped_column(ForeignKey(f"{TENANT_SCHEMA}.mags.id", ondelete="CASCADE"), nullable=False)

    media: Mapped[Media] = relationship(back_populates="mag_links")


class Gallery(Base):
    __tablename__ = "galleries"
    __table_args__ = {"schema": TENANT_SCHEMA}

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="draft")  # draft, published
    access_level: Mapped[str] = mapped_column(String(16), nullable=False, default="public")  # public, members, mag
    visibility_mode: Mapped[str] = mapped_column(String(16), nullable=False, default="hidden")
    restricted_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    items: Mapped[list["GalleryItem"]] = relationship(
        back_populates="gallery",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="GalleryItem.position",
    )
    mag_links: Mapped[list["GalleryMag"]] = relationship(
        back_populates="gallery",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @property
    def mag_ids(self) -> list[int]:
        return sorted(link.mag_id for link in self.mag_links)


class GalleryItem(Base):
    __tablename__ = "gallery_items"
    __table_args__ = (
        UniqueConstraint("gallery_id", "media_id", name="uq_gallery_item_media"),
        {"schema": TENANT_SCHEMA},
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    gallery_id: Mapped[int] = mapped_column(
        ForeignKey(f"{TENANT_SCHEMA}.galleries.id", ondelete="CASCADE"), nullable=False
    )
    media_id: Mapped[int] = mapped_column(ForeignKey(f"{TENANT_SCHEMA}.media.id", ondelete="CASCADE"), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    caption: Mapped[str | None] = mapped_column(Text, nullable=True)

    gallery: Mapped[Gallery] = relationship(back_populates="items")
    media: Mapped[Media] = relationship(lazy="selectin")


class GalleryMag(Base):
    __tablename__ = "gallery_mags"
    __table_args__ = (
        UniqueConstraint("gallery_id", "mag_id", name="uq_gallery_mag"),
        {"schema": TENANT_SCHEMA},
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    gallery_id: Mapped[int] = mapped_column(
        ForeignKey(f"{TENANT_SCHEMA}.galleries.id", ondelete="CASCADE"), nullable=False
    )
    mag_id: Mapped[int] = mapped_column(ForeignKey(f"{TENANT_SCHEMA}.mags.id", ondelete="CASCADE"), nullable=False)

    gallery: Mapped[Gallery] = relationship(back_populates="mag_links")
