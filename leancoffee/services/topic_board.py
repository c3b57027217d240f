from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Dict, FrozenSet, List, Optional

from sqlalchemy.orm import Session

from ..data.session_store import SessionStore, utcnow
from ..models.session import LeanSession, SessionStatus
from ..models.topic import Topic, TopicStatus, TopicVote
from ..schemas.session import TopicRead
from ..utils.identifiers import build_topic_id
from .broadcast import BroadcastHub
from .errors import FieldError, Forbidden, InvalidArgument, InvalidTransition, SessionClosed
from .events import SessionEvent, SessionEventType, snapshot
from .session_locks import SessionLockRegistry

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("audit")

# Allowed source statuses for each target status.
TOPIC_TRANSITIONS: Dict[TopicStatus, FrozenSet[TopicStatus]] = {
    TopicStatus.DISCUSSING: frozenset({TopicStatus.TO_DISCUSS}),
    TopicStatus.DISCUSSED: frozenset({TopicStatus.DISCUSSING}),
    TopicStatus.ARCHIVED: frozenset(
        {TopicStatus.TO_DISCUSS, TopicStatus.DISCUSSING, TopicStatus.DISCUSSED}
    ),
}

VOTABLE_STATUSES = frozenset({TopicStatus.TO_DISCUSS, TopicStatus.DISCUSSING})

_BACKLOG_RANK: Dict[TopicStatus, int] = {
    TopicStatus.DISCUSSING: 0,
    TopicStatus.TO_DISCUSS: 1,
    TopicStatus.DISCUSSED: 2,
    TopicStatus.ARCHIVED: 3,
}


@dataclass
class VoteResult:
    topic: Topic
    changed: bool


@dataclass
class TopicStatusResult:
    topic: Topic
    previous_status: TopicStatus
    changed: bool


class TopicBoard:
    """Lean Coffee backlog: topic submission, dot voting and discussion status."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        hub: BroadcastHub,
        locks: SessionLockRegistry,
        *,
        title_max_length: int = 200,
        description_max_length: int = 2000,
    ) -> None:
        self._session_factory = session_factory
        self._hub = hub
        self._locks = locks
        self.title_max_length = title_max_length
        self.description_max_length = description_max_length

    @staticmethod
    def _open_session(store: SessionStore, session_id: str) -> LeanSession:
        session = store.require_session(session_id)
        if session.status == SessionStatus.CLOSED:
            raise SessionClosed(session_id)
        return session

    @staticmethod
    def _require_active(store: SessionStore, session_id: str, user_id: str) -> None:
        participant = store.get_participant(session_id, user_id)
        if participant is None or not participant.is_active:
            raise Forbidden(
                f"User {user_id} is not an active participant of session {session_id}"
            )

    async def submit(
        self,
        session_id: str,
        user_id: str,
        title: str,
        description: Optional[str] = None,
    ) -> Topic:
        async with self._locks.hold(session_id):
            with self._session_factory() as db:
                store = SessionStore(db)
                self._open_session(store, session_id)
                self._require_active(store, session_id, user_id)

                clean_title = (title or "").strip()
                clean_description = (description or "").strip() or None
                errors: List[FieldError] = []
                if not clean_title:
                    errors.append(FieldError("title", "Topic title must not be empty."))
                elif len(clean_title) > self.title_max_length:
                    errors.append(
                        FieldError(
                            "title",
                            f"Topic title must be at most {self.title_max_length} characters.",
                        )
                    )
                if clean_description and len(clean_description) > self.description_max_length:
                    errors.append(
                        FieldError(
                            "description",
                            "Topic description must be at most "
                            f"{self.description_max_length} characters.",
                        )
                    )
                if errors:
                    raise InvalidArgument("Validation failed", validation_errors=errors)

                display_order = store.next_display_order(session_id)
                topic = Topic(
                    topic_id=build_topic_id(session_id, display_order),
                    session_id=session_id,
                    submitted_by=user_id,
                    title=clean_title,
                    description=clean_description,
                    status=TopicStatus.TO_DISCUSS,
                    vote_count=0,
                    display_order=display_order,
                    created_at=utcnow(),
                )
                db.add(topic)
                db.commit()
                logger.info(
                    "Topic %s submitted to session %s by %s",
                    topic.topic_id,
                    session_id,
                    user_id,
                )
                self._publish(
                    SessionEventType.TOPIC_ADDED,
                    session_id,
                    {"topic": snapshot(TopicRead, topic)},
                )
                return topic

    async def cast_vote(self, session_id: str, topic_id: str, user_id: str) -> VoteResult:
        async with self._locks.hold(session_id):
            with self._session_factory() as db:
                store = SessionStore(db)
                self._open_session(store, session_id)
                self._require_active(store, session_id, user_id)
                topic = store.require_topic(session_id, topic_id)
                if topic.status not in VOTABLE_STATUSES:
                    raise InvalidTransition(
                        f"Topic {topic_id} is {topic.status.value} and no longer accepts votes"
                    )
                if store.get_vote(topic_id, user_id) is not None:
                    return VoteResult(topic=topic, changed=False)

                db.add(
                    TopicVote(
                        session_id=session_id,
                        topic_id=topic_id,
                        user_id=user_id,
                        voted_at=utcnow(),
                    )
                )
                topic.vote_count = (topic.vote_count or 0) + 1
                db.commit()
                self._publish_vote(SessionEventType.VOTE_CAST, topic, user_id)
                return VoteResult(topic=topic, changed=True)

    async def remove_vote(
        self, session_id: str, topic_id: str, user_id: str
    ) -> VoteResult:
        async with self._locks.hold(session_id):
            with self._session_factory() as db:
                store = SessionStore(db)
                self._open_session(store, session_id)
                self._require_active(store, session_id, user_id)
                topic = store.require_topic(session_id, topic_id)
                vote = store.get_vote(topic_id, user_id)
                if vote is None:
                    return VoteResult(topic=topic, changed=False)

                db.delete(vote)
                topic.vote_count = max(0, (topic.vote_count or 0) - 1)
                db.commit()
                self._publish_vote(SessionEventType.VOTE_REMOVED, topic, user_id)
                return VoteResult(topic=topic, changed=True)

    async def set_status(
        self,
        session_id: str,
        topic_id: str,
        actor_id: str,
        status: TopicStatus,
    ) -> TopicStatusResult:
        async with self._locks.hold(session_id):
            with self._session_factory() as db:
                store = SessionStore(db)
                session = self._open_session(store, session_id)
                if actor_id != session.facilitator_id:
                    raise Forbidden(
                        f"Only the facilitator may change topic status in session {session_id}"
                    )
                topic = store.require_topic(session_id, topic_id)
                previous = topic.status
                if previous == status:
                    return TopicStatusResult(topic=topic, previous_status=previous, changed=False)
                allowed = TOPIC_TRANSITIONS.get(status, frozenset())
                if previous not in allowed:
                    raise InvalidTransition(
                        f"Cannot move topic {topic_id} from {previous.value} to {status.value}"
                    )
                if status == TopicStatus.DISCUSSING and session.status != SessionStatus.IN_PROGRESS:
                    raise InvalidTransition(
                        f"Session {session_id} must be in progress to discuss a topic"
                    )

                now = utcnow()
                displaced: List[Topic] = []
                if status == TopicStatus.DISCUSSING:
                    for current in store.topics_with_status(
                        session_id, [TopicStatus.DISCUSSING]
                    ):
                        current.status = TopicStatus.DISCUSSED
                        current.discussion_ended_at = now
                        displaced.append(current)
                    topic.discussion_started_at = now
                elif previous == TopicStatus.DISCUSSING:
                    topic.discussion_ended_at = now
                topic.status = status
                db.commit()

                audit_logger.info(
                    "topic_status session_id=%s topic_id=%s actor=%s %s->%s",
                    session_id,
                    topic_id,
                    actor_id,
                    previous.value,
                    status.value,
                )
                for current in displaced:
                    self._publish_status(current, TopicStatus.DISCUSSING)
                self._publish_status(topic, previous)
                return TopicStatusResult(topic=topic, previous_status=previous, changed=True)

    def list(self, session_id: str) -> List[Topic]:
        with self._session_factory() as db:
            store = SessionStore(db)
            store.require_session(session_id)
            topics = store.list_topics(session_id)
        return sorted(
            topics,
            key=lambda item: (
                _BACKLOG_RANK.get(item.status, len(_BACKLOG_RANK)),
                -(item.vote_count or 0),
                item.display_order,
            ),
        )

    def _publish(self, kind: SessionEventType, session_id: str, payload) -> None:
        self._hub.publish(SessionEvent(kind=kind, session_id=session_id, payload=payload))

    def _publish_vote(self, kind: SessionEventType, topic: Topic, user_id: str) -> None:
        self._publish(
            kind,
            topic.session_id,
            {
                "topicId": topic.topic_id,
                "userId": user_id,
                "voteCount": topic.vote_count,
            },
        )

    def _publish_status(self, topic: Topic, previous: TopicStatus) -> None:
        self._publish(
            SessionEventType.TOPIC_STATUS_CHANGED,
            topic.session_id,
            {
                "topic": snapshot(TopicRead, topic),
                "previousStatus": previous.value,
                "status": topic.status.value,
            },
        )
