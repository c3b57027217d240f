from __future__ import annotations

import logging
import re
from typing import Callable, Dict, Iterator, List, Optional, Union

from sqlalchemy.orm import Session

from ..data.session_store import SessionStore, utcnow
from ..models.note import Note, NoteType
from ..models.session import SessionStatus
from ..schemas.session import NoteRead
from ..utils.identifiers import build_note_id
from .broadcast import BroadcastHub
from .errors import FieldError, Forbidden, InvalidArgument, SessionClosed
from .events import SessionEvent, SessionEventType, snapshot
from .session_locks import SessionLockRegistry

logger = logging.getLogger(__name__)

_SEPARATORS = re.compile(r"[\s_\-]+")


def _lookup_key(value: str) -> str:
    return _SEPARATORS.sub("", value).lower()


# "ActionItem", "action_item", "action-item" and "ACTION ITEM" all resolve the same way.
NOTE_TYPE_LOOKUP: Dict[str, NoteType] = {
    _lookup_key(member.name): member for member in NoteType
}


def parse_note_type(value: Union[str, NoteType, None]) -> Optional[NoteType]:
    if isinstance(value, NoteType):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    return NOTE_TYPE_LOOKUP.get(_lookup_key(value))


class NoteSequence:
    """
    Lazy, finite, restartable view of a session's notes in sequence order.

    Each iteration captures the highest committed sequence when it starts and
    stops there, so notes appended mid-iteration are left for the next pass.
    Rows are read in keyset batches with a short-lived database session each.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        session_id: str,
        *,
        after_sequence: int = 0,
        batch_size: int = 200,
    ) -> None:
        self._session_factory = session_factory
        self.session_id = session_id
        self.after_sequence = max(0, after_sequence)
        self.batch_size = max(1, batch_size)

    def __iter__(self) -> Iterator[Note]:
        with self._session_factory() as db:
            high_water = SessionStore(db).last_sequence(self.session_id)
        cursor = self.after_sequence
        while cursor < high_water:
            with self._session_factory() as db:
                batch = SessionStore(db).note_batch(
                    self.session_id,
                    after_sequence=cursor,
                    through_sequence=high_water,
                    limit=self.batch_size,
                )
            if not batch:
                return
            yield from batch
            cursor = batch[-1].sequence


class NoteLedger:
    """Append-only, gap-free sequence of notes per session."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        hub: BroadcastHub,
        locks: SessionLockRegistry,
        *,
        max_length: int = 2000,
        batch_size: int = 200,
    ) -> None:
        self._session_factory = session_factory
        self._hub = hub
        self._locks = locks
        self.max_length = max_length
        self.batch_size = batch_size

    async def append(
        self,
        session_id: str,
        author_id: str,
        text: str,
        note_type: Union[str, NoteType, None] = NoteType.GENERAL,
        *,
        topic_id: Optional[str] = None,
    ) -> Note:
        async with self._locks.hold(session_id):
            with self._session_factory() as db:
                store = SessionStore(db)
                session = store.require_session(session_id)
                if session.status == SessionStatus.CLOSED:
                    raise SessionClosed(session_id)
                participant = store.get_participant(session_id, author_id)
                if participant is None or not participant.is_active:
                    raise Forbidden(
                        f"User {author_id} is not an active participant of session {session_id}"
                    )

                content = (text or "").strip()
                resolved_type = parse_note_type(note_type)
                errors: List[FieldError] = []
                if not content:
                    errors.append(FieldError("content", "Note text must not be empty."))
                elif len(content) > self.max_length:
                    errors.append(
                        FieldError(
                            "content",
                            f"Note text must be at most {self.max_length} characters.",
                        )
                    )
                if resolved_type is None:
                    errors.append(
                        FieldError("noteType", f"Unknown note type '{note_type}'.")
                    )
                if topic_id and store.get_topic(session_id, topic_id) is None:
                    errors.append(
                        FieldError(
                            "topicId",
                            f"Topic {topic_id} does not belong to session {session_id}.",
                        )
                    )
                if errors:
                    raise InvalidArgument("Validation failed", validation_errors=errors)

                sequence = store.last_sequence(session_id) + 1
                note = Note(
                    note_id=build_note_id(session_id, sequence),
                    session_id=session_id,
                    sequence=sequence,
                    author_id=author_id,
                    content=content,
                    note_type=resolved_type,
                    topic_id=topic_id or None,
                    created_at=utcnow(),
                )
                db.add(note)
                db.commit()
                logger.info(
                    "Note %s appended to session %s by %s (%s)",
                    note.note_id,
                    session_id,
                    author_id,
                    resolved_type.value,
                )
                self._hub.publish(
                    SessionEvent(
                        kind=SessionEventType.NOTE_ADDED,
                        session_id=session_id,
                        payload={"note": snapshot(NoteRead, note)},
                    )
                )
                return note

    def list(self, session_id: str, after_sequence: int = 0) -> NoteSequence:
        return NoteSequence(
            self._session_factory,
            session_id,
            after_sequence=after_sequence,
            batch_size=self.batch_size,
        )

    def last_sequence(self, session_id: str) -> int:
        with self._session_factory() as db:
            return SessionStore(db).last_sequence(session_id)
