from __future__ import annotations
from datetime import datetime
from sqlalchemy import String, Integer, DateTime, JSON, ForeignKey, Float, Boolean, Index
from sqlalchemy.orm import Mapped, mapped_column
from sanctuary_engine.clock import utcnow
from sanctuary_engine.infrastructure.db import Base


class SanctuarySession(Base):
    __tablename__ = "sanctuary_sessions"
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    topic: Mapped[str] = mapped_column(String(256))
    description: Mapped[str | None] = mapped_column(String(2048), default=None)
    emoji: Mapped[str | None] = mapped_column(String(16), default=None)
    category: Mapped[str | None] = mapped_column(String(64), default=None, index=True)
    tags: Mapped[list] = mapped_column(JSON, default=list)
    language: Mapped[str] = mapped_column(String(16), default="en")
    access_type: Mapped[str] = mapped_column(String(16), default="public", index=True)
    invitation_code: Mapped[str | None] = mapped_column(String(32), default=None, index=True)
    status: Mapped[str] = mapped_column(String(16), index=True)
    scheduled_at: Mapped[datetime | None] = mapped_column(DateTime, default=None, index=True)
    schedule_version: Mapped[int] = mapped_column(Integer, default=0)
    duration_minutes: Mapped[int] = mapped_column(Integer, default=60)
    max_participants: Mapped[int] = mapped_column(Integer, default=50)
    host_id: Mapped[str] = mapped_column(String(64), index=True)
    host_alias: Mapped[str] = mapped_column(String(128))
    voice_modulation_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    moderation_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    recording_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    audio_only: Mapped[bool] = mapped_column(Boolean, default=True)
    emergency_contact_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    media_channel: Mapped[str] = mapped_column(String(128))
    monitoring_status: Mapped[str] = mapped_column(String(16), default="ok")
    actual_start_time: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    actual_end_time: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    end_reason: Mapped[str | None] = mapped_column(String(64), default=None)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, default=None, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_session_status_scheduled", "status", "scheduled_at"),
    )


class Participant(Base):
    """Session membership row. ``room_id`` makes single-room membership structural."""
    __tablename__ = "participants"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(String(36), ForeignKey("sanctuary_sessions.id"), index=True)
    participant_id: Mapped[str] = mapped_column(String(64), index=True)
    alias: Mapped[str] = mapped_column(String(128))
    role: Mapped[str] = mapped_column(String(16), default="member")
    is_muted: Mapped[bool] = mapped_column(Boolean, default=False)
    hand_raised: Mapped[bool] = mapped_column(Boolean, default=False)
    hand_raised_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    connection_status: Mapped[str] = mapped_column(String(16), default="connecting")
    audio_level: Mapped[int] = mapped_column(Integer, default=0)
    acknowledged_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    joined_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    left_at: Mapped[datetime | None] = mapped_column(DateTime, default=None, index=True)
    removal_reason: Mapped[str | None] = mapped_column(String(32), default=None)
    kicked: Mapped[bool] = mapped_column(Boolean, default=False)
    warnings: Mapped[int] = mapped_column(Integer, default=0)
    room_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("breakout_rooms.id"), default=None, index=True)
    room_joined_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    join_token: Mapped[str | None] = mapped_column(String(512), default=None)

    __table_args__ = (
        Index("ux_participant_session", "session_id", "participant_id", unique=True),
    )


class BreakoutRoom(Base):
    __tablename__ = "breakout_rooms"
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    session_id: Mapped[str] = mapped_column(String(36), ForeignKey("sanctuary_sessions.id"), index=True)
    name: Mapped[str] = mapped_column(String(128))
    topic: Mapped[str | None] = mapped_column(String(256), default=None)
    description: Mapped[str | None] = mapped_column(String(1024), default=None)
    facilitator_id: Mapped[str] = mapped_column(String(64))
    max_participants: Mapped[int] = mapped_column(Integer)
    status: Mapped[str] = mapped_column(String(16), default="waiting", index=True)
    duration_minutes: Mapped[int | None] = mapped_column(Integer, default=None)
    auto_close: Mapped[bool] = mapped_column(Boolean, default=False)
    auto_close_after_minutes: Mapped[int | None] = mapped_column(Integer, default=None)
    media_channel: Mapped[str] = mapped_column(String(160))
    created_seq: Mapped[int] = mapped_column(Integer)
    created_by: Mapped[str] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)

    __table_args__ = (
        Index("ix_room_session_seq", "session_id", "created_seq"),
    )


class Alert(Base):
    """Safety incident. Never deleted; ``resolved`` is terminal."""
    __tablename__ = "alerts"
    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    session_id: Mapped[str] = mapped_column(String(36), ForeignKey("sanctuary_sessions.id"), index=True)
    participant_id: Mapped[str] = mapped_column(String(64), index=True)
    category: Mapped[str] = mapped_column(String(32), index=True)
    severity: Mapped[str] = mapped_column(String(16), index=True)
    confidence: Mapped[float] = mapped_column(Float)
    triggers: Mapped[list] = mapped_column(JSON, default=list)
    status: Mapped[str] = mapped_column(String(16), index=True)
    action_required: Mapped[bool] = mapped_column(Boolean, default=False)
    completed_steps: Mapped[list] = mapped_column(JSON, default=list)
    source: Mapped[str] = mapped_column(String(32), default="classifier")
    message: Mapped[str | None] = mapped_column(String(1024), default=None)
    emergency_notified_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime, default=None)

    __table_args__ = (
        Index("ix_alert_session_status", "session_id", "status"),
    )


class AlertAction(Base):
    __tablename__ = "alert_actions"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    alert_id: Mapped[str] = mapped_column(String(36), ForeignKey("alerts.id"), index=True)
    seq: Mapped[int] = mapped_column(Integer)
    actor: Mapped[str] = mapped_column(String(64))
    action: Mapped[str] = mapped_column(String(32))
    from_status: Mapped[str | None] = mapped_column(String(16), default=None)
    to_status: Mapped[str | None] = mapped_column(String(16), default=None)
    note: Mapped[str | None] = mapped_column(String(512), default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)

    __table_args__ = (
        Index("ux_alert_action_seq", "alert_id", "seq", unique=True),
    )


class TransitionAudit(Base):
    """Every lifecycle transition attempt, successful or not."""
    __tablename__ = "transition_audit"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(String(36), index=True)
    actor: Mapped[str] = mapped_column(String(64), index=True)
    operation: Mapped[str] = mapped_column(String(32), index=True)
    from_status: Mapped[str | None] = mapped_column(String(16), default=None)
    to_status: Mapped[str | None] = mapped_column(String(16), default=None)
    outcome: Mapped[str] = mapped_column(String(32), index=True)
    detail: Mapped[str | None] = mapped_column(String(512), default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)


class Reaction(Base):
    __tablename__ = "reactions"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(String(36), ForeignKey("sanctuary_sessions.id"), index=True)
    participant_id: Mapped[str] = mapped_column(String(64), index=True)
    emoji: Mapped[str] = mapped_column(String(16))
    target_participant_id: Mapped[str | None] = mapped_column(String(64), default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime, index=True)


__all__ = [
    "SanctuarySession",
    "Participant",
    "BreakoutRoom",
    "Alert",
    "AlertAction",
    "TransitionAudit",
    "Reaction",
]
