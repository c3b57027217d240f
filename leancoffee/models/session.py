import enum

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    String,
    Text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func  # For default timestamps

from ..database import Base


class SessionStatus(str, enum.Enum):
    DRAFT = "draft"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CLOSED = "closed"


class ParticipantRole(str, enum.Enum):
    FACILITATOR = "facilitator"
    ATTENDEE = "attendee"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


class LeanSession(Base):
    __tablename__ = "lean_sessions"

    session_id = Column(String(20), primary_key=True, index=True)
    title = Column(String(200), nullable=False, index=True)
    description = Column(Text, nullable=True)
    status = Column(
        Enum(
            SessionStatus,
            name="lean_session_status",
            values_callable=_enum_values,
            native_enum=False,
        ),
        nullable=False,
        default=SessionStatus.DRAFT,
        index=True,
    )
    facilitator_id = Column(String(64), nullable=False, index=True)
    scheduled_start_time = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    closed_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    participants = relationship(
        "Participant",
        back_populates="session",
        order_by="Participant.joined_at",
        cascade="all, delete-orphan",
    )
    notes = relationship(
        "Note",
        back_populates="session",
        order_by="Note.sequence",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    topics = relationship(
        "Topic",
        back_populates="session",
        order_by="Topic.display_order",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        return (
            f"LeanSession(session_id={self.session_id!r}, "
            f"status={self.status!r}, facilitator_id={self.facilitator_id!r})"
        )


class Participant(Base):
    __tablename__ = "lean_participants"

    session_id = Column(
        String(20),
        ForeignKey("lean_sessions.session_id", ondelete="CASCADE"),
        primary_key=True,
    )
    user_id = Column(String(64), primary_key=True, index=True)
    display_name = Column(String(200), nullable=True)
    role = Column(
        Enum(
            ParticipantRole,
            name="lean_participant_role",
            values_callable=_enum_values,
            native_enum=False,
        ),
        nullable=False,
        default=ParticipantRole.ATTENDEE,
    )
    is_active = Column(Boolean, default=False, nullable=False)
    joined_at = Column(DateTime(timezone=True), nullable=False)
    left_at = Column(DateTime(timezone=True), nullable=True)
    last_seen_at = Column(DateTime(timezone=True), nullable=True)

    session = relationship("LeanSession", back_populates="participants")

    def __repr__(self) -> str:
        return (
            f"Participant(session_id={self.session_id!r}, user_id={self.user_id!r}, "
            f"role={self.role!r}, is_active={self.is_active})"
        )
