from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List

from sqlalchemy.orm import Session

from ..data.session_store import SessionStore, utcnow
from ..models.session import LeanSession, SessionStatus
from ..models.topic import Topic, TopicStatus
from ..schemas.session import SessionRead, SessionSummary, TopicRead
from .broadcast import BroadcastHub
from .errors import Forbidden, InvalidTransition, SessionClosed
from .events import SessionEvent, SessionEventType, snapshot
from .presence import PresenceTracker
from .session_locks import SessionLockRegistry

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("audit")


class SessionOperation(str, enum.Enum):
    START = "start"
    COMPLETE = "complete"
    CLOSE = "close"


@dataclass(frozen=True)
class Transition:
    source: SessionStatus
    target: SessionStatus
    timestamp_field: str


TRANSITIONS: Dict[SessionOperation, Transition] = {
    SessionOperation.START: Transition(
        SessionStatus.DRAFT, SessionStatus.IN_PROGRESS, "started_at"
    ),
    SessionOperation.COMPLETE: Transition(
        SessionStatus.IN_PROGRESS, SessionStatus.COMPLETED, "completed_at"
    ),
    SessionOperation.CLOSE: Transition(
        SessionStatus.COMPLETED, SessionStatus.CLOSED, "closed_at"
    ),
}


@dataclass
class TransitionResult:
    session: LeanSession
    changed: bool
    participant_count: int
    note_count: int


class SessionStateMachine:
    """Linear lifecycle draft -> in_progress -> completed -> closed, facilitator only."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        hub: BroadcastHub,
        locks: SessionLockRegistry,
        presence: PresenceTracker,
        *,
        require_facilitator_present: bool = False,
    ) -> None:
        self._session_factory = session_factory
        self._hub = hub
        self._locks = locks
        self._presence = presence
        self.require_facilitator_present = require_facilitator_present

    async def start(self, session_id: str, actor_id: str) -> TransitionResult:
        return await self.apply(SessionOperation.START, session_id, actor_id)

    async def complete(self, session_id: str, actor_id: str) -> TransitionResult:
        return await self.apply(SessionOperation.COMPLETE, session_id, actor_id)

    async def close(self, session_id: str, actor_id: str) -> TransitionResult:
        return await self.apply(SessionOperation.CLOSE, session_id, actor_id)

    async def apply(
        self, operation: SessionOperation, session_id: str, actor_id: str
    ) -> TransitionResult:
        transition = TRANSITIONS[operation]
        async with self._locks.hold(session_id):
            with self._session_factory() as db:
                store = SessionStore(db)
                session = store.require_session(session_id)
                self._authorize(session, actor_id, operation)

                if session.status == transition.target:
                    logger.debug(
                        "Session %s already %s; %s is a no-op",
                        session_id,
                        session.status.value,
                        operation.value,
                    )
                    return TransitionResult(
                        session=session,
                        changed=False,
                        participant_count=store.count_participants(session_id),
                        note_count=store.count_notes(session_id),
                    )
                if session.status == SessionStatus.CLOSED:
                    raise SessionClosed(session_id)
                if session.status != transition.source:
                    raise InvalidTransition(
                        f"Cannot {operation.value} session {session_id} "
                        f"from status {session.status.value}"
                    )

                previous = session.status
                now = utcnow()
                session.status = transition.target
                setattr(session, transition.timestamp_field, now)
                session.updated_at = now
                ended_topics = self._side_effects(store, operation, session_id, now)
                db.commit()

                result = TransitionResult(
                    session=session,
                    changed=True,
                    participant_count=store.count_participants(session_id),
                    note_count=store.count_notes(session_id),
                )
                audit_logger.info(
                    "session_transition session_id=%s operation=%s actor=%s %s->%s",
                    session_id,
                    operation.value,
                    actor_id,
                    previous.value,
                    transition.target.value,
                )
                self._publish(result, previous, ended_topics)
                if operation == SessionOperation.CLOSE:
                    self._presence.release_session(session_id)
                return result

    def _authorize(
        self, session: LeanSession, actor_id: str, operation: SessionOperation
    ) -> None:
        if actor_id != session.facilitator_id:
            raise Forbidden(
                f"Only the facilitator may {operation.value} session {session.session_id}"
            )
        if self.require_facilitator_present and actor_id not in self._presence.list_active(
            session.session_id
        ):
            raise Forbidden(
                f"The facilitator must be connected to {operation.value} "
                f"session {session.session_id}"
            )

    def _side_effects(
        self,
        store: SessionStore,
        operation: SessionOperation,
        session_id: str,
        now: datetime,
    ) -> List[Topic]:
        ended: List[Topic] = []
        if operation == SessionOperation.COMPLETE:
            for topic in store.topics_with_status(session_id, [TopicStatus.DISCUSSING]):
                topic.status = TopicStatus.DISCUSSED
                topic.discussion_ended_at = now
                ended.append(topic)
        elif operation == SessionOperation.CLOSE:
            store.deactivate_participants(session_id, left_at=now)
        return ended

    def _publish(
        self,
        result: TransitionResult,
        previous: SessionStatus,
        ended_topics: List[Topic],
    ) -> None:
        session = result.session
        summary = SessionSummary(
            participant_count=result.participant_count, note_count=result.note_count
        ).model_dump(mode="json", by_alias=True)
        session_payload = snapshot(SessionRead, session)
        session_payload.update(summary)
        for topic in ended_topics:
            self._hub.publish(
                SessionEvent(
                    kind=SessionEventType.TOPIC_STATUS_CHANGED,
                    session_id=session.session_id,
                    payload={
                        "topic": snapshot(TopicRead, topic),
                        "previousStatus": TopicStatus.DISCUSSING.value,
                        "status": TopicStatus.DISCUSSED.value,
                    },
                )
            )
        self._hub.publish(
            SessionEvent(
                kind=SessionEventType.STATUS_CHANGED,
                session_id=session.session_id,
                payload={
                    "previousStatus": previous.value,
                    "status": session.status.value,
                    "session": session_payload,
                    "summary": summary,
                },
            )
        )
        if session.status == SessionStatus.COMPLETED:
            self._hub.publish(
                SessionEvent(
                    kind=SessionEventType.SESSION_ENDED,
                    session_id=session.session_id,
                    payload={"session": session_payload, "summary": summary},
                )
            )

