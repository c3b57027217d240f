from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import Field, field_validator

from leancoffee.models.note import NoteType
from leancoffee.models.session import ParticipantRole, SessionStatus
from leancoffee.models.topic import TopicStatus
from leancoffee.schemas.envelope import CamelModel


class SessionCreate(CamelModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    scheduled_start_time: Optional[datetime] = None

    @field_validator("title")
    @classmethod
    def strip_title(cls, value: str) -> str:
        trimmed = (value or "").strip()
        if not trimmed:
            raise ValueError("Title is required.")
        return trimmed

    @field_validator("description", mode="before")
    @classmethod
    def empty_description_to_none(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value


class NoteCreate(CamelModel):
    content: str = Field(..., max_length=20000)
    # Validated against NoteType by the ledger so direct callers share one rule.
    note_type: str = Field(NoteType.GENERAL.value, max_length=40)
    topic_id: Optional[str] = Field(None, max_length=40)


class TopicCreate(CamelModel):
    title: str = Field(..., max_length=2000)
    description: Optional[str] = Field(None, max_length=20000)


class TopicStatusUpdate(CamelModel):
    status: TopicStatus


class ParticipantRead(CamelModel):
    session_id: str
    user_id: str
    display_name: Optional[str] = None
    role: ParticipantRole
    is_active: bool
    joined_at: datetime
    left_at: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None


class NoteRead(CamelModel):
    note_id: str
    session_id: str
    sequence: int
    author_id: str
    content: str
    note_type: NoteType
    topic_id: Optional[str] = None
    created_at: datetime


class TopicRead(CamelModel):
    topic_id: str
    session_id: str
    submitted_by: str
    title: str
    description: Optional[str] = None
    status: TopicStatus
    vote_count: int
    display_order: int
    created_at: datetime
    discussion_started_at: Optional[datetime] = None
    discussion_ended_at: Optional[datetime] = None


class SessionSummary(CamelModel):
    participant_count: int
    note_count: int


class SessionRead(CamelModel):
    session_id: str
    title: str
    description: Optional[str] = None
    status: SessionStatus
    facilitator_id: str
    scheduled_start_time: Optional[datetime] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    participant_count: int = 0
    note_count: int = 0


class SessionDetail(SessionRead):
    participants: List[ParticipantRead] = Field(default_factory=list)
    active_participant_ids: List[str] = Field(default_factory=list)
    last_sequence: int = 0
    current_topic: Optional[TopicRead] = None


class SessionExport(CamelModel):
    session: SessionRead
    final_status: SessionStatus
    participants: List[ParticipantRead]
    notes: List[NoteRead]
    topics: List[TopicRead]
    exported_at: datetime
