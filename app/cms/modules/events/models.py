from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.cms.models import Base
from app.cms.tenancy import TENANT_SCHEMA


class Event(Base):
    __tablename__ = "events"
    __table_args__ = (
        Index("idx_events_start", "start_at"),
        {"schema": TENANT_SCHEMA},
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    event_type: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Stored as naive UTC.
    start_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    end_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")
    is_all_day: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    location: Mapped[str | None] = mapped_column(String(512), nullable=True)
    link_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    recurrence_rule: Mapped[str | None] = mapped_column(String(512), nullable=True)  # RFC 5545 RRULE

    status: Mapped[str] = mapped_column(String(32), nullable=False, default="draft")  # draft, published, cancelled
    access_level: Mapped[str] = mapped_column(String(16), nullable=False, default="public")  # public, members, mag
    required_mag_id: Mapped[int | None] = mapped_column(
        ForeignKey(f"{TENANT_SCHEMA}.mags.id", ondelete="SET NULL"), nullable=True
    )
    visibility_mode: Mapped[str] = mapped_column(String(16), nullable=False, default="hidden")
    restricted_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class Resource(Base):
    """Bookable room/equipment; types come from the calendar_resource_types setting."""

    __tablename__ = "resources"
    __table_args__ = {"schema": TENANT_SCHEMA}

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    resource_type: Mapped[str] = mapped_column(String(64), nullable=False)
    details: Mapped[dict | None] = mapped_column("metadata", JSON, nullable=True)
    # Exclusive resources can only serve one event at a time.
    is_exclusive: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class Participant(Base):
    """A person who can be booked onto events: a CRM contact or a team member."""

    __tablename__ = "participants"
    __table_args__ = (
        UniqueConstraint("source_type", "source_id", name="uq_participant_source"),
        {"schema": TENANT_SCHEMA},
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    source_type: Mapped[str] = mapped_column(String(32), nullable=False)  # crm_contact, team_member
    source_id: Mapped[int] = mapped_column(Integer, nullable=False)
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class EventParticipant(Base):
    __tablename__ = "event_participants"
    __table_args__ = (
        UniqueConstraint("event_id", "participant_id", name="uq_event_participant"),
        {"schema": TENANT_SCHEMA},
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    event_id: Mapped[int] = mapped_column(ForeignKey(f"{TENANT_SCHEMA}.events.id", ondelete="CASCADE"), nullable=False)
    participant_id: Mapped[int] = mapped_column(
        ForeignKey(f"{TENANT_SCHEMA}.participants.id", ondelete="CASCADE"), nullable=False
    )


class EventResource(Base):
    __tablename__ = "event_resources"
    __table_args__ = (
        UniqueConstraint("event_id", "resource_id", name="uq_event_resource"),
        {"schema": TENANT_SCHEMA},
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    event_id: Mapped[int] = mapped_column(ForeignKey(f"{TENANT_SCHEMA}.events.id", ondelete="CASCADE"), nullable=False)
    resource_id: Mapped[int] = mapped_column(ForeignKey(f"{TENANT_SCHEMA}.resources.id", ondelete="CASCADE"), nullable=False)
