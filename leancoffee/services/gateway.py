"""
Session gateway: resolves the actor against a session, dispatches to the core
components and converts every outcome into a result envelope.

Operations never raise to the caller. Typed core failures keep their error
code, store failures become ``STORE_UNAVAILABLE`` and anything else is logged
and reported as ``INTERNAL_ERROR`` without internal detail.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from itertools import islice
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from ..config.loader import (
    get_broadcast_settings,
    get_note_settings,
    get_pagination_settings,
    get_presence_settings,
    get_session_settings,
    get_topic_settings,
)
from ..data.session_store import SessionStore
from ..database import SessionLocal
from ..models.session import LeanSession, SessionStatus
from ..models.topic import TopicStatus
from ..schemas.envelope import AppResult, PagedResults
from ..schemas.session import (
    NoteCreate,
    NoteRead,
    ParticipantRead,
    SessionCreate,
    SessionDetail,
    SessionExport,
    SessionRead,
    TopicCreate,
    TopicRead,
)
from .broadcast import BroadcastHub, Connection
from .errors import (
    FieldError,
    Forbidden,
    InvalidArgument,
    InvalidTransition,
    SessionClosed,
    SessionCoreError,
    StoreUnavailable,
)
from .note_ledger import NoteLedger
from .presence import PresenceTracker, direct_connection_id
from .session_locks import SessionLockRegistry
from .state_machine import SessionStateMachine, TransitionResult
from .topic_board import TopicBoard

logger = logging.getLogger(__name__)

R = TypeVar("R")

NO_CHANGE = "No change"
STORE_UNAVAILABLE_MESSAGE = "The session store is currently unavailable."
INTERNAL_ERROR_MESSAGE = "An unexpected error occurred."


class SessionGateway:
    """Authorization and dispatch layer in front of the session core."""

    def __init__(
        self,
        *,
        session_factory: Callable[[], Session],
        hub: BroadcastHub,
        locks: SessionLockRegistry,
        presence: PresenceTracker,
        state_machine: SessionStateMachine,
        ledger: NoteLedger,
        topics: TopicBoard,
        default_page_size: int = 20,
        max_page_size: int = 100,
        note_page_size: int = 100,
        title_max_length: int = 200,
        description_max_length: int = 2000,
    ) -> None:
        self.session_factory = session_factory
        self.hub = hub
        self.locks = locks
        self.presence = presence
        self.state_machine = state_machine
        self.ledger = ledger
        self.topics = topics
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size
        self.note_page_size = note_page_size
        self.title_max_length = title_max_length
        self.description_max_length = description_max_length

    # ------------------------------------------------------------------ #
    # Envelope plumbing
    # ------------------------------------------------------------------ #

    async def _invoke(self, label: str, action: Callable[[], Awaitable[R]]) -> R:
        try:
            return await action()
        except SessionCoreError as exc:
            logger.info("%s rejected: %s (%s)", label, exc.message, exc.error_code)
            return AppResult.from_error(exc)
        except SQLAlchemyError:
            logger.exception("Store failure during %s", label)
            return AppResult.from_error(StoreUnavailable(STORE_UNAVAILABLE_MESSAGE))
        except Exception:  # noqa: BLE001
            logger.exception("Unexpected failure during %s", label)
            return AppResult.failure_result(
                INTERNAL_ERROR_MESSAGE, "INTERNAL_ERROR", status_code=500
            )

    async def _invoke_paged(
        self, label: str, action: Callable[[], Awaitable[PagedResults]]
    ) -> PagedResults:
        result = await self._invoke(label, action)
        if isinstance(result, AppResult):
            return PagedResults.from_result(result)
        return result

    def _page_size(self, page_size: Optional[int]) -> int:
        if not page_size or page_size < 1:
            return self.default_page_size
        return min(page_size, self.max_page_size)

    @staticmethod
    def _require_member(store: SessionStore, session_id: str, user_id: str) -> None:
        if store.get_participant(session_id, user_id) is None:
            raise Forbidden(
                f"User {user_id} is not a participant of session {session_id}"
            )

    @staticmethod
    def _session_read(store: SessionStore, session: LeanSession) -> SessionRead:
        data = SessionRead.model_validate(session)
        data.participant_count = store.count_participants(session.session_id)
        data.note_count = store.count_notes(session.session_id)
        return data

    @staticmethod
    def _transition_read(result: TransitionResult) -> SessionRead:
        data = SessionRead.model_validate(result.session)
        data.participant_count = result.participant_count
        data.note_count = result.note_count
        return data

    # ------------------------------------------------------------------ #
    # Sessions
    # ------------------------------------------------------------------ #

    async def create_session(
        self,
        actor_id: str,
        payload: SessionCreate,
        *,
        display_name: Optional[str] = None,
    ) -> AppResult[SessionRead]:
        async def action() -> AppResult[SessionRead]:
            errors: List[FieldError] = []
            if len(payload.title) > self.title_max_length:
                errors.append(
                    FieldError(
                        "title",
                        f"Title must be at most {self.title_max_length} characters.",
                    )
                )
            if payload.description and len(payload.description) > self.description_max_length:
                errors.append(
                    FieldError(
                        "description",
                        "Description must be at most "
                        f"{self.description_max_length} characters.",
                    )
                )
            if errors:
                raise InvalidArgument("Validation failed", validation_errors=errors)
            with self.session_factory() as db:
                store = SessionStore(db)
                try:
                    session = store.create_session(
                        title=payload.title,
                        description=payload.description,
                        facilitator_id=actor_id,
                        scheduled_start_time=payload.scheduled_start_time,
                        facilitator_name=display_name,
                    )
                except IntegrityError:
                    logger.error("Could not allocate a unique session id for %s", actor_id)
                    raise
                return AppResult.success_result(
                    self._session_read(store, session),
                    "Session created",
                    status_code=201,
                )

        return await self._invoke("create_session", action)

    async def list_sessions(
        self,
        actor_id: str,
        *,
        status: Optional[SessionStatus] = None,
        facilitator_id: Optional[str] = None,
        mine: bool = False,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> PagedResults[SessionRead]:
        async def action() -> PagedResults[SessionRead]:
            current_page = max(1, page or 1)
            size = self._page_size(page_size)
            with self.session_factory() as db:
                store = SessionStore(db)
                sessions, total = store.list_sessions(
                    status=status,
                    facilitator_id=facilitator_id,
                    participant_id=actor_id if mine else None,
                    offset=(current_page - 1) * size,
                    limit=size,
                )
                items = [self._session_read(store, item) for item in sessions]
            return PagedResults[SessionRead].page(
                items, total_count=total, current_page=current_page, page_size=size
            )

        return await self._invoke_paged("list_sessions", action)

    async def get_session(self, actor_id: str, session_id: str) -> AppResult[SessionDetail]:
        async def action() -> AppResult[SessionDetail]:
            with self.session_factory() as db:
                store = SessionStore(db)
                session = store.require_session(session_id)
                summary = self._session_read(store, session)
                detail = SessionDetail(**summary.model_dump())
                # Rosters and note cursors are only shown to participants.
                if store.get_participant(session_id, actor_id) is not None:
                    detail.participants = [
                        ParticipantRead.model_validate(item)
                        for item in store.list_participants(session_id)
                    ]
                    detail.active_participant_ids = self.presence.list_active(session_id)
                    detail.last_sequence = store.last_sequence(session_id)
                    current = store.topics_with_status(session_id, [TopicStatus.DISCUSSING])
                    if current:
                        detail.current_topic = TopicRead.model_validate(current[0])
            return AppResult.success_result(detail)

        return await self._invoke("get_session", action)

    async def _transition(
        self,
        label: str,
        operation: Callable[[str, str], Awaitable[TransitionResult]],
        session_id: str,
        actor_id: str,
    ) -> AppResult[SessionRead]:
        async def action() -> AppResult[SessionRead]:
            result = await operation(session_id, actor_id)
            return AppResult.success_result(
                self._transition_read(result),
                None if result.changed else NO_CHANGE,
            )

        return await self._invoke(label, action)

    async def start_session(self, actor_id: str, session_id: str) -> AppResult[SessionRead]:
        return await self._transition(
            "start_session", self.state_machine.start, session_id, actor_id
        )

    async def complete_session(
        self, actor_id: str, session_id: str
    ) -> AppResult[SessionRead]:
        return await self._transition(
            "complete_session", self.state_machine.complete, session_id, actor_id
        )

    async def close_session(self, actor_id: str, session_id: str) -> AppResult[SessionRead]:
        return await self._transition(
            "close_session", self.state_machine.close, session_id, actor_id
        )

    async def export_session(
        self, actor_id: str, session_id: str
    ) -> AppResult[SessionExport]:
        async def action() -> AppResult[SessionExport]:
            with self.session_factory() as db:
                store = SessionStore(db)
                session = store.require_session(session_id)
                self._require_member(store, session_id, actor_id)
                if session.status not in (SessionStatus.COMPLETED, SessionStatus.CLOSED):
                    raise InvalidTransition(
                        f"Session {session_id} can be exported once it is completed"
                    )
                session_data = self._session_read(store, session)
                participants = [
                    ParticipantRead.model_validate(item)
                    for item in store.list_participants(session_id)
                ]
                topics = [
                    TopicRead.model_validate(item) for item in store.list_topics(session_id)
                ]
            notes = [
                NoteRead.model_validate(item) for item in self.ledger.list(session_id)
            ]
            export = SessionExport(
                session=session_data,
                final_status=session_data.status,
                participants=participants,
                notes=notes,
                topics=topics,
                exported_at=datetime.now(timezone.utc),
            )
            return AppResult.success_result(export)

        return await self._invoke("export_session", action)

    # ------------------------------------------------------------------ #
    # Participants
    # ------------------------------------------------------------------ #

    async def join_session(
        self, actor_id: str, session_id: str, *, display_name: Optional[str] = None
    ) -> AppResult[ParticipantRead]:
        async def action() -> AppResult[ParticipantRead]:
            participant = await self.presence.on_connect(
                session_id,
                actor_id,
                connection_id=direct_connection_id(actor_id),
                display_name=display_name,
            )
            return AppResult.success_result(ParticipantRead.model_validate(participant))

        return await self._invoke("join_session", action)

    async def leave_session(
        self, actor_id: str, session_id: str
    ) -> AppResult[ParticipantRead]:
        async def action() -> AppResult[ParticipantRead]:
            participant = await self.presence.leave(session_id, actor_id)
            return AppResult.success_result(ParticipantRead.model_validate(participant))

        return await self._invoke("leave_session", action)

    async def list_participants(
        self, actor_id: str, session_id: str
    ) -> AppResult[List[ParticipantRead]]:
        async def action() -> AppResult[List[ParticipantRead]]:
            with self.session_factory() as db:
                store = SessionStore(db)
                store.require_session(session_id)
                self._require_member(store, session_id, actor_id)
                participants = [
                    ParticipantRead.model_validate(item)
                    for item in store.list_participants(session_id)
                ]
            return AppResult.success_result(participants)

        return await self._invoke("list_participants", action)

    async def list_active_participants(
        self, actor_id: str, session_id: str
    ) -> AppResult[List[str]]:
        async def action() -> AppResult[List[str]]:
            with self.session_factory() as db:
                store = SessionStore(db)
                store.require_session(session_id)
                self._require_member(store, session_id, actor_id)
            return AppResult.success_result(self.presence.list_active(session_id))

        return await self._invoke("list_active_participants", action)

    # ------------------------------------------------------------------ #
    # Notes
    # ------------------------------------------------------------------ #

    async def append_note(
        self, actor_id: str, session_id: str, payload: NoteCreate
    ) -> AppResult[NoteRead]:
        async def action() -> AppResult[NoteRead]:
            note = await self.ledger.append(
                session_id,
                actor_id,
                payload.content,
                payload.note_type,
                topic_id=payload.topic_id,
            )
            return AppResult.success_result(
                NoteRead.model_validate(note), status_code=201
            )

        return await self._invoke("append_note", action)

    async def list_notes(
        self,
        actor_id: str,
        session_id: str,
        *,
        after_sequence: int = 0,
        limit: Optional[int] = None,
    ) -> PagedResults[NoteRead]:
        async def action() -> PagedResults[NoteRead]:
            if after_sequence < 0:
                raise InvalidArgument.for_field(
                    "afterSequence", "afterSequence must not be negative."
                )
            size = min(limit, self.note_page_size) if limit and limit > 0 else self.note_page_size
            with self.session_factory() as db:
                store = SessionStore(db)
                store.require_session(session_id)
                self._require_member(store, session_id, actor_id)
                last_sequence = store.last_sequence(session_id)
            notes = [
                NoteRead.model_validate(item)
                for item in islice(self.ledger.list(session_id, after_sequence), size)
            ]
            # Sequences are gap-free, so the remaining count follows from the cursor.
            remaining = max(0, last_sequence - after_sequence)
            return PagedResults[NoteRead].page(
                notes, total_count=remaining, current_page=1, page_size=size
            )

        return await self._invoke_paged("list_notes", action)

    # ------------------------------------------------------------------ #
    # Topics
    # ------------------------------------------------------------------ #

    async def submit_topic(
        self, actor_id: str, session_id: str, payload: TopicCreate
    ) -> AppResult[TopicRead]:
        async def action() -> AppResult[TopicRead]:
            topic = await self.topics.submit(
                session_id, actor_id, payload.title, payload.description
            )
            return AppResult.success_result(TopicRead.model_validate(topic), status_code=201)

        return await self._invoke("submit_topic", action)

    async def list_topics(
        self, actor_id: str, session_id: str
    ) -> AppResult[List[TopicRead]]:
        async def action() -> AppResult[List[TopicRead]]:
            with self.session_factory() as db:
                store = SessionStore(db)
                store.require_session(session_id)
                self._require_member(store, session_id, actor_id)
            topics = [TopicRead.model_validate(item) for item in self.topics.list(session_id)]
            return AppResult.success_result(topics)

        return await self._invoke("list_topics", action)

    async def vote_topic(
        self, actor_id: str, session_id: str, topic_id: str
    ) -> AppResult[TopicRead]:
        async def action() -> AppResult[TopicRead]:
            result = await self.topics.cast_vote(session_id, topic_id, actor_id)
            return AppResult.success_result(
                TopicRead.model_validate(result.topic),
                None if result.changed else NO_CHANGE,
            )

        return await self._invoke("vote_topic", action)

    async def unvote_topic(
        self, actor_id: str, session_id: str, topic_id: str
    ) -> AppResult[TopicRead]:
        async def action() -> AppResult[TopicRead]:
            result = await self.topics.remove_vote(session_id, topic_id, actor_id)
            return AppResult.success_result(
                TopicRead.model_validate(result.topic),
                None if result.changed else NO_CHANGE,
            )

        return await self._invoke("unvote_topic", action)

    async def set_topic_status(
        self, actor_id: str, session_id: str, topic_id: str, status: TopicStatus
    ) -> AppResult[TopicRead]:
        async def action() -> AppResult[TopicRead]:
            result = await self.topics.set_status(session_id, topic_id, actor_id, status)
            return AppResult.success_result(
                TopicRead.model_validate(result.topic),
                None if result.changed else NO_CHANGE,
            )

        return await self._invoke("set_topic_status", action)

    # ------------------------------------------------------------------ #
    # Realtime connections
    # ------------------------------------------------------------------ #

    async def open_connection(
        self,
        session_id: str,
        connection: Connection,
        *,
        display_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Register the connection, mark the user present and queue ``connection_ack``.

        The ack is queued before the subscription is made, so it is always the
        first message; events committed after ``lastSequence`` was read follow it.
        Callers run :meth:`ensure_connectable` before accepting the socket; a
        session closed in between still fails here with the typed core error.
        """
        self.hub.register(connection)
        try:
            await self.presence.on_connect(
                session_id,
                connection.user_id,
                connection_id=connection.id,
                display_name=display_name,
            )
        except Exception:
            self.hub.unregister(connection.id)
            raise
        ack = {
            "sessionId": session_id,
            "connectionId": connection.id,
            "userId": connection.user_id,
            "activeParticipants": self.presence.list_active(session_id),
            "lastSequence": self.ledger.last_sequence(session_id),
        }
        self.hub.send(connection.id, {"type": "connection_ack", "payload": ack})
        self.hub.subscribe(connection.id, session_id)
        return ack

    def ensure_connectable(self, session_id: str) -> None:
        with self.session_factory() as db:
            session = SessionStore(db).require_session(session_id)
            if session.status == SessionStatus.CLOSED:
                raise SessionClosed(session_id)

    async def close_connection(self, session_id: str, connection: Connection) -> None:
        self.hub.unregister(connection.id)
        await self.presence.on_disconnect(
            session_id, connection.user_id, connection_id=connection.id
        )

    def catch_up(self, session_id: str, after_sequence: int) -> List[Dict[str, Any]]:
        return [
            NoteRead.model_validate(item).model_dump(mode="json", by_alias=True)
            for item in self.ledger.list(session_id, max(0, after_sequence))
        ]

    def follow(self, connection_id: str, user_id: str, session_id: str) -> None:
        """Add interest in another session the user participates in."""
        with self.session_factory() as db:
            store = SessionStore(db)
            store.require_session(session_id)
            self._require_member(store, session_id, user_id)
        self.hub.subscribe(connection_id, session_id)

    def unfollow(self, connection_id: str, session_id: str) -> None:
        self.hub.unsubscribe(connection_id, session_id)

    async def shutdown(self) -> None:
        await self.presence.shutdown()
        await self.hub.close()


def build_gateway(session_factory: Callable[[], Session]) -> SessionGateway:
    """Wire the component graph from configuration."""
    session_settings = get_session_settings()
    note_settings = get_note_settings()
    topic_settings = get_topic_settings()
    pagination = get_pagination_settings()

    hub = BroadcastHub(queue_size=get_broadcast_settings()["queue_size"])
    locks = SessionLockRegistry(default_timeout=session_settings["lock_timeout_seconds"])
    presence = PresenceTracker(
        session_factory,
        hub,
        locks,
        grace_period_seconds=get_presence_settings()["grace_period_seconds"],
    )
    state_machine = SessionStateMachine(
        session_factory,
        hub,
        locks,
        presence,
        require_facilitator_present=session_settings["require_facilitator_present"],
    )
    ledger = NoteLedger(
        session_factory,
        hub,
        locks,
        max_length=note_settings["max_length"],
        batch_size=note_settings["batch_size"],
    )
    topics = TopicBoard(
        session_factory,
        hub,
        locks,
        title_max_length=topic_settings["title_max_length"],
        description_max_length=topic_settings["description_max_length"],
    )
    return SessionGateway(
        session_factory=session_factory,
        hub=hub,
        locks=locks,
        presence=presence,
        state_machine=state_machine,
        ledger=ledger,
        topics=topics,
        default_page_size=pagination["default_page_size"],
        max_page_size=pagination["max_page_size"],
        note_page_size=note_settings["page_size"],
        title_max_length=session_settings["title_max_length"],
        description_max_length=session_settings["description_max_length"],
    )


_gateway: Optional[SessionGateway] = None


def get_gateway() -> SessionGateway:
    """FastAPI dependency returning the process-wide gateway."""
    global _gateway
    if _gateway is None:
        _gateway = build_gateway(SessionLocal)
    return _gateway
