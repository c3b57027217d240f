from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional, Sequence, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..models.note import Note
from ..models.session import LeanSession, Participant, ParticipantRole, SessionStatus
from ..models.topic import Topic, TopicStatus, TopicVote
from ..services.errors import session_not_found, topic_not_found
from ..utils.identifiers import generate_session_id

logger = logging.getLogger(__name__)

SESSION_ID_ATTEMPTS = 3


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SessionStore:
    """Durable record of sessions, participants, notes and topics."""

    def __init__(self, db: Session):
        self.db = db

    # ------------------------------------------------------------------ #
    # Sessions
    # ------------------------------------------------------------------ #

    def get_session(self, session_id: str) -> Optional[LeanSession]:
        return (
            self.db.query(LeanSession)
            .filter(LeanSession.session_id == session_id)
            .first()
        )

    def require_session(self, session_id: str) -> LeanSession:
        session = self.get_session(session_id)
        if session is None:
            raise session_not_found(session_id)
        return session

    def create_session(
        self,
        *,
        title: str,
        facilitator_id: str,
        description: Optional[str] = None,
        scheduled_start_time: Optional[datetime] = None,
        facilitator_name: Optional[str] = None,
    ) -> LeanSession:
        """Persist a draft session together with its facilitator participant row."""
        last_error: Optional[IntegrityError] = None
        for attempt in range(1, SESSION_ID_ATTEMPTS + 1):
            created_at = utcnow()
            session = LeanSession(
                session_id=generate_session_id(self.db, created_at),
                title=title,
                description=description,
                status=SessionStatus.DRAFT,
                facilitator_id=facilitator_id,
                scheduled_start_time=scheduled_start_time,
                created_at=created_at,
            )
            session.participants.append(
                Participant(
                    user_id=facilitator_id,
                    display_name=facilitator_name,
                    role=ParticipantRole.FACILITATOR,
                    is_active=False,
                    joined_at=created_at,
                )
            )
            self.db.add(session)
            try:
                self.db.commit()
            except IntegrityError as exc:
                self.db.rollback()
                last_error = exc
                logger.warning(
                    "Session id collision on attempt %s/%s: %s",
                    attempt,
                    SESSION_ID_ATTEMPTS,
                    session.session_id,
                )
                continue
            logger.info(
                "Created session %s for facilitator %s",
                session.session_id,
                facilitator_id,
            )
            return session
        assert last_error is not None
        raise last_error

    def list_sessions(
        self,
        *,
        status: Optional[SessionStatus] = None,
        facilitator_id: Optional[str] = None,
        participant_id: Optional[str] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> Tuple[List[LeanSession], int]:
        query = self.db.query(LeanSession)
        if status is not None:
            query = query.filter(LeanSession.status == status)
        if facilitator_id:
            query = query.filter(LeanSession.facilitator_id == facilitator_id)
        if participant_id:
            query = query.join(Participant).filter(Participant.user_id == participant_id)
        total = query.count()
        items = (
            query.order_by(LeanSession.created_at.desc(), LeanSession.session_id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        return items, total

    # ------------------------------------------------------------------ #
    # Participants
    # ------------------------------------------------------------------ #

    def get_participant(self, session_id: str, user_id: str) -> Optional[Participant]:
        return (
            self.db.query(Participant)
            .filter(
                Participant.session_id == session_id,
                Participant.user_id == user_id,
            )
            .first()
        )

    def add_participant(
        self,
        session: LeanSession,
        user_id: str,
        *,
        display_name: Optional[str] = None,
        joined_at: Optional[datetime] = None,
    ) -> Participant:
        role = (
            ParticipantRole.FACILITATOR
            if user_id == session.facilitator_id
            else ParticipantRole.ATTENDEE
        )
        timestamp = joined_at or utcnow()
        participant = Participant(
            session_id=session.session_id,
            user_id=user_id,
            display_name=display_name,
            role=role,
            is_active=True,
            joined_at=timestamp,
            last_seen_at=timestamp,
        )
        self.db.add(participant)
        return participant

    def list_participants(
        self, session_id: str, *, active_only: bool = False
    ) -> List[Participant]:
        query = self.db.query(Participant).filter(Participant.session_id == session_id)
        if active_only:
            query = query.filter(Participant.is_active.is_(True))
        return query.order_by(Participant.joined_at, Participant.user_id).all()

    def count_participants(self, session_id: str) -> int:
        return (
            self.db.query(func.count(Participant.user_id))
            .filter(Participant.session_id == session_id)
            .scalar()
            or 0
        )

    def deactivate_participants(
        self, session_id: Optional[str] = None, *, left_at: Optional[datetime] = None
    ) -> int:
        """Mark participants inactive; all sessions when ``session_id`` is None."""
        query = self.db.query(Participant).filter(Participant.is_active.is_(True))
        if session_id is not None:
            query = query.filter(Participant.session_id == session_id)
        return query.update(
            {Participant.is_active: False, Participant.left_at: left_at or utcnow()},
            synchronize_session=False,
        )

    # ------------------------------------------------------------------ #
    # Notes
    # ------------------------------------------------------------------ #

    def last_sequence(self, session_id: str) -> int:
        return (
            self.db.query(func.max(Note.sequence))
            .filter(Note.session_id == session_id)
            .scalar()
            or 0
        )

    def count_notes(self, session_id: str) -> int:
        return (
            self.db.query(func.count(Note.note_id))
            .filter(Note.session_id == session_id)
            .scalar()
            or 0
        )

    def note_batch(
        self,
        session_id: str,
        *,
        after_sequence: int,
        through_sequence: int,
        limit: int,
    ) -> List[Note]:
        return (
            self.db.query(Note)
            .filter(
                Note.session_id == session_id,
                Note.sequence > after_sequence,
                Note.sequence <= through_sequence,
            )
            .order_by(Note.sequence)
            .limit(limit)
            .all()
        )

    # ------------------------------------------------------------------ #
    # Topics and votes
    # ------------------------------------------------------------------ #

    def get_topic(self, session_id: str, topic_id: str) -> Optional[Topic]:
        return (
            self.db.query(Topic)
            .filter(Topic.session_id == session_id, Topic.topic_id == topic_id)
            .first()
        )

    def require_topic(self, session_id: str, topic_id: str) -> Topic:
        topic = self.get_topic(session_id, topic_id)
        if topic is None:
            raise topic_not_found(topic_id)
        return topic

    def next_display_order(self, session_id: str) -> int:
        current = (
            self.db.query(func.max(Topic.display_order))
            .filter(Topic.session_id == session_id)
            .scalar()
        )
        return (current or 0) + 1

    def list_topics(self, session_id: str) -> List[Topic]:
        return (
            self.db.query(Topic)
            .filter(Topic.session_id == session_id)
            .order_by(Topic.display_order)
            .all()
        )

    def topics_with_status(
        self, session_id: str, statuses: Sequence[TopicStatus]
    ) -> List[Topic]:
        return (
            self.db.query(Topic)
            .filter(Topic.session_id == session_id, Topic.status.in_(list(statuses)))
            .order_by(Topic.display_order)
            .all()
        )

    def get_vote(self, topic_id: str, user_id: str) -> Optional[TopicVote]:
        return (
            self.db.query(TopicVote)
            .filter(TopicVote.topic_id == topic_id, TopicVote.user_id == user_id)
            .first()
        )
