"""
SQLAlchemy ORM models for calendar sync and task scheduling.
"""
from sqlalchemy import (
    Column, String, Text, Integer, Boolean, TIMESTAMP,
    ForeignKey, UniqueConstraint, Index, JSON
)
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid
import os

from .base import Base

# Use appropriate types for SQLite (testing) vs PostgreSQL (production)
is_sqlite = os.getenv("DATABASE_URL", "").startswith("sqlite")
JSONType = JSON if is_sqlite else JSONB
UUIDType = String(36) if is_sqlite else UUID(as_uuid=False)
Timestamp = TIMESTAMP(timezone=True)


def uuid_default():
    return str(uuid.uuid4())


class User(Base):
    """Account owning calendars and tasks."""
    __tablename__ = "users"

    id = Column(UUIDType, primary_key=True, default=uuid_default)
    email = Column(String(255), unique=True, nullable=False, index=True)
    timezone = Column(String(64), default="UTC")
    scheduling_preferences = Column(JSONType, default=dict)
    created_at = Column(Timestamp, server_default=func.now())

    calendars = relationship("Calendar", back_populates="user", cascade="all, delete-orphan")
    tasks = relationship("Task", back_populates="user", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<User(id={self.id}, email={self.email})>"


class Calendar(Base):
    """A provider calendar the user connected for sync."""
    __tablename__ = "calendars"
    __table_args__ = (
        UniqueConstraint("user_id", "google_calendar_id", name="uq_calendar_user_google_id"),
    )

    id = Column(UUIDType, primary_key=True, default=uuid_default)
    user_id = Column(UUIDType, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    google_calendar_id = Column(String(255), nullable=False)
    summary = Column(String(255))
    is_primary = Column(Boolean, default=False)
    enabled = Column(Boolean, default=True)
    access_token = Column(Text)
    refresh_token = Column(Text)
    token_expiry = Column(Timestamp)
    created_at = Column(Timestamp, server_default=func.now())

    user = relationship("User", back_populates="calendars")

    def __repr__(self):
        return f"<Calendar(id={self.id}, user_id={self.user_id}, google_calendar_id={self.google_calendar_id})>"


class WatchSubscription(Base):
    """Push-notification channel registered with the provider."""
    __tablename__ = "watch_subscriptions"

    id = Column(String(255), primary_key=True)
    resource_id = Column(String(255))
    user_id = Column(UUIDType, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    calendar_id = Column(String(255), nullable=False)
    channel_token = Column(String(512), nullable=False)
    expiration = Column(Timestamp, nullable=False, index=True)
    created_at = Column(Timestamp, server_default=func.now())

    def __repr__(self):
        return f"<WatchSubscription(id={self.id}, calendar_id={self.calendar_id}, expiration={self.expiration})>"


class SyncCursor(Base):
    """Incremental sync token per (user, calendar)."""
    __tablename__ = "sync_cursors"
    __table_args__ = (
        UniqueConstraint("user_id", "calendar_id", name="uq_sync_cursor_user_calendar"),
    )

    id = Column(UUIDType, primary_key=True, default=uuid_default)
    user_id = Column(UUIDType, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    calendar_id = Column(String(255), nullable=False)
    sync_token = Column(Text)
    last_sync_at = Column(Timestamp)
    last_full_sync_at = Column(Timestamp)

    def __repr__(self):
        return f"<SyncCursor(user_id={self.user_id}, calendar_id={self.calendar_id}, last_sync_at={self.last_sync_at})>"


class CalendarEvent(Base):
    """Local copy of a provider event."""
    __tablename__ = "calendar_events"
    __table_args__ = (
        UniqueConstraint("user_id", "calendar_id", "provider_event_id", name="uq_calendar_event_provider_id"),
        Index("ix_calendar_events_range", "user_id", "calendar_id", "start_time", "end_time"),
    )

    id = Column(UUIDType, primary_key=True, default=uuid_default)
    user_id = Column(UUIDType, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    calendar_id = Column(String(255), nullable=False)
    provider_event_id = Column(String(1024), nullable=False)
    title = Column(String(500), default="")
    start_time = Column(Timestamp, nullable=False)
    end_time = Column(Timestamp, nullable=False)
    all_day = Column(Boolean, default=False)
    status = Column(String(20), default="confirmed")
    transparent = Column(Boolean, default=False)
    linked_task_id = Column(String(64), index=True)
    buffer_role = Column(String(10))
    priority = Column(String(10))
    recurring_event_id = Column(String(1024))
    updated_at = Column(Timestamp, server_default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<CalendarEvent(id={self.provider_event_id}, title={self.title}, start_time={self.start_time})>"


class Task(Base):
    """Task produced by the extraction service; only scheduling fields live here."""
    __tablename__ = "tasks"

    id = Column(UUIDType, primary_key=True, default=uuid_default)
    user_id = Column(UUIDType, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    content = Column(Text, nullable=False)
    task_type = Column(String(32))
    priority = Column(String(10), default="medium")
    time_estimate = Column(Integer)
    due_date = Column(Timestamp)
    buffer_before = Column(Integer)
    buffer_after = Column(Integer)

    scheduled_start = Column(Timestamp)
    scheduled_end = Column(Timestamp)
    calendar_event_id = Column(String(1024), index=True)
    calendar_id = Column(String(255))
    buffer_before_event_id = Column(String(1024))
    buffer_after_event_id = Column(String(1024))
    sync_status = Column(String(32), default="pending")
    unscheduled_reason = Column(String(64))
    unscheduled_at = Column(Timestamp)
    rescheduled_externally = Column(Boolean, default=False)
    rescheduled_at = Column(Timestamp)

    created_at = Column(Timestamp, server_default=func.now())
    updated_at = Column(Timestamp, server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="tasks")

    def __repr__(self):
        return f"<Task(id={self.id}, priority={self.priority}, sync_status={self.sync_status})>"


class SchedulingRule(Base):
    """User override of the default rule for one task type."""
    __tablename__ = "scheduling_rules"
    __table_args__ = (
        UniqueConstraint("user_id", "task_type", name="uq_scheduling_rule_user_type"),
    )

    id = Column(UUIDType, primary_key=True, default=uuid_default)
    user_id = Column(UUIDType, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    task_type = Column(String(32), nullable=False)
    preferred_start = Column(String(5))
    preferred_end = Column(String(5))
    default_duration = Column(Integer)
    buffer_before = Column(Integer, default=0)
    buffer_after = Column(Integer, default=0)
    preferred_days = Column(JSONType, default=list)
    enabled = Column(Boolean, default=True)


class ProtectedSlot(Base):
    """Recurring time range that is treated as busy."""
    __tablename__ = "protected_slots"

    id = Column(UUIDType, primary_key=True, default=uuid_default)
    user_id = Column(UUIDType, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    days = Column(JSONType, default=list)
    start_time = Column(String(5), nullable=False)
    end_time = Column(String(5), nullable=False)
    allow_override_for_urgent = Column(Boolean, default=False)
    enabled = Column(Boolean, default=True)
