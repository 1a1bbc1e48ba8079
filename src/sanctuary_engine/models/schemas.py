from __future__ import annotations
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, Field


class SessionCreate(BaseModel):
    topic: str
    host_alias: str
    description: Optional[str] = None
    emoji: Optional[str] = None
    category: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    language: str = "en"
    access_type: str = "public"
    duration_minutes: int = 60
    max_participants: int = 50
    voice_modulation_enabled: bool = False
    moderation_enabled: bool = True
    recording_enabled: bool = False
    audio_only: bool = True
    emergency_contact_enabled: bool = True
    scheduled_at: Optional[datetime] = None  # absent: the session starts immediately


class ScheduleRequest(BaseModel):
    scheduled_at: datetime


class AdmitRequest(BaseModel):
    alias: Optional[str] = None
    acknowledgment: bool = False
    invitation_code: Optional[str] = None


class RoleUpdate(BaseModel):
    role: str


class MuteUpdate(BaseModel):
    muted: bool


class TelemetryUpdate(BaseModel):
    audio_level: int
    connection_status: Optional[str] = None
    packet_loss: Optional[float] = None
    rtt_ms: Optional[float] = None
    jitter_ms: Optional[float] = None


class ReactionCreate(BaseModel):
    emoji: str
    target_participant_id: Optional[str] = None


class RoomCreate(BaseModel):
    name: str
    topic: Optional[str] = None
    description: Optional[str] = None
    max_participants: int = 6
    facilitator_id: Optional[str] = None
    duration_minutes: Optional[int] = None
    auto_close: bool = False
    auto_close_after_minutes: Optional[int] = None


class RoomMove(BaseModel):
    participant_id: Optional[str] = None  # defaults to the caller


class ContentReport(BaseModel):
    subject_id: str
    content_sample: str


class EmergencyRequest(BaseModel):
    emergency_type: str
    message: Optional[str] = None
    severity: str = "high"


class AlertActionRequest(BaseModel):
    action: str
    note: Optional[str] = None


class AlertStepRequest(BaseModel):
    step: str


class SessionOut(BaseModel):
    id: str
    topic: str
    description: Optional[str] = None
    emoji: Optional[str] = None
    category: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    language: str
    access_type: str
    status: str
    scheduled_at: Optional[datetime] = None
    duration_minutes: int
    max_participants: int
    host_id: str
    host_alias: str
    voice_modulation_enabled: bool
    moderation_enabled: bool
    recording_enabled: bool
    audio_only: bool
    emergency_contact_enabled: bool
    media_channel: str
    monitoring_status: str
    actual_start_time: Optional[datetime] = None
    actual_end_time: Optional[datetime] = None
    end_reason: Optional[str] = None
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    invitation_code: Optional[str] = None


class ParticipantOut(BaseModel):
    participant_id: str
    alias: str
    role: str
    is_muted: bool
    hand_raised: bool
    hand_raised_at: Optional[datetime] = None
    connection_status: str
    audio_level: int
    connection_quality: Optional[str] = None
    room_id: Optional[str] = None
    joined_at: Optional[datetime] = None
    left_at: Optional[datetime] = None
    removal_reason: Optional[str] = None


class RoomOut(BaseModel):
    id: str
    session_id: str
    name: str
    topic: Optional[str] = None
    description: Optional[str] = None
    facilitator_id: str
    max_participants: int
    status: str
    duration_minutes: Optional[int] = None
    auto_close: bool
    auto_close_after_minutes: Optional[int] = None
    media_channel: str
    members: list[str]
    created_seq: int
    created_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None


class AlertActionOut(BaseModel):
    seq: int
    actor: str
    action: str
    from_status: Optional[str] = None
    to_status: Optional[str] = None
    note: Optional[str] = None
    timestamp: Optional[datetime] = None


class AlertOut(BaseModel):
    id: str
    session_id: str
    participant_id: str
    category: str
    severity: str
    confidence: float
    triggers: list[str]
    status: str
    action_required: bool
    completed_steps: list[str]
    source: str
    message: Optional[str] = None
    emergency_notified_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    actions: Optional[list[AlertActionOut]] = None
