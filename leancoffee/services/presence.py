from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set, Tuple

from sqlalchemy.orm import Session

from ..data.session_store import SessionStore, utcnow
from ..models.session import Participant, SessionStatus
from ..schemas.session import ParticipantRead
from .broadcast import BroadcastHub
from .errors import SessionClosed, participant_not_found
from .events import SessionEvent, SessionEventType, snapshot
from .session_locks import SessionLockRegistry

logger = logging.getLogger(__name__)

PresenceKey = Tuple[str, str]


def direct_connection_id(user_id: str) -> str:
    """Connection id used for joins that arrive without a websocket."""
    return f"direct:{user_id}"


@dataclass
class PresenceEntry:
    session_id: str
    user_id: str
    connections: Set[str] = field(default_factory=set)
    last_seen: datetime = field(default_factory=utcnow)
    timer: Optional["asyncio.Task[None]"] = None

    def touch(self) -> None:
        self.last_seen = utcnow()

    def cancel_timer(self) -> None:
        if self.timer is not None and not self.timer.done():
            self.timer.cancel()
        self.timer = None


class PresenceTracker:
    """
    In-memory index of who is connected to which session.

    The index is rebuildable: it only mirrors live connections and pending grace
    timers, while the stored ``is_active`` flag is what other components read.
    A user counts as active while connected or while a grace timer is pending.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        hub: BroadcastHub,
        locks: SessionLockRegistry,
        *,
        grace_period_seconds: float = 15.0,
    ) -> None:
        self._session_factory = session_factory
        self._hub = hub
        self._locks = locks
        self.grace_period_seconds = grace_period_seconds
        self._entries: Dict[PresenceKey, PresenceEntry] = {}

    # ------------------------------------------------------------------ #
    # Queries
    # ------------------------------------------------------------------ #

    def list_active(self, session_id: str) -> List[str]:
        return sorted(
            user_id for (sid, user_id) in self._entries.keys() if sid == session_id
        )

    def is_active(self, session_id: str, user_id: str) -> bool:
        return (session_id, user_id) in self._entries

    def last_seen(self, session_id: str, user_id: str) -> Optional[datetime]:
        entry = self._entries.get((session_id, user_id))
        return entry.last_seen if entry else None

    def has_pending_timer(self, session_id: str, user_id: str) -> bool:
        entry = self._entries.get((session_id, user_id))
        return bool(entry and entry.timer and not entry.timer.done())

    def touch(self, session_id: str, user_id: str) -> None:
        entry = self._entries.get((session_id, user_id))
        if entry is not None:
            entry.touch()

    # ------------------------------------------------------------------ #
    # Connection lifecycle
    # ------------------------------------------------------------------ #

    async def on_connect(
        self,
        session_id: str,
        user_id: str,
        *,
        connection_id: Optional[str] = None,
        display_name: Optional[str] = None,
    ) -> Participant:
        """Record a connection; first join and reactivation are persisted and announced."""
        connection_id = connection_id or direct_connection_id(user_id)
        async with self._locks.hold(session_id):
            with self._session_factory() as db:
                store = SessionStore(db)
                session = store.require_session(session_id)
                if session.status == SessionStatus.CLOSED:
                    raise SessionClosed(session_id)

                key = (session_id, user_id)
                entry = self._entries.get(key)
                if entry is not None:
                    entry.cancel_timer()

                now = utcnow()
                participant = store.get_participant(session_id, user_id)
                kind: Optional[SessionEventType] = None
                if participant is None:
                    participant = store.add_participant(
                        session, user_id, display_name=display_name, joined_at=now
                    )
                    kind = SessionEventType.PARTICIPANT_JOINED
                elif not participant.is_active:
                    # The facilitator row exists from creation but has never connected.
                    first_visit = (
                        participant.last_seen_at is None and participant.left_at is None
                    )
                    participant.is_active = True
                    participant.left_at = None
                    kind = (
                        SessionEventType.PARTICIPANT_JOINED
                        if first_visit
                        else SessionEventType.PARTICIPANT_ACTIVE
                    )
                participant.last_seen_at = now
                if display_name and participant.display_name != display_name:
                    participant.display_name = display_name
                db.commit()

                if entry is None:
                    entry = PresenceEntry(session_id=session_id, user_id=user_id)
                    self._entries[key] = entry
                entry.connections.add(connection_id)
                entry.touch()

                if kind is not None:
                    logger.info(
                        "Participant %s %s session %s",
                        user_id,
                        "joined" if kind == SessionEventType.PARTICIPANT_JOINED else "rejoined",
                        session_id,
                    )
                    self._publish(kind, session_id, participant)
                else:
                    logger.debug(
                        "Participant %s reconnected to session %s (connection %s)",
                        user_id,
                        session_id,
                        connection_id,
                    )
                return participant

    async def on_disconnect(
        self,
        session_id: str,
        user_id: str,
        *,
        connection_id: Optional[str] = None,
    ) -> None:
        """Drop a connection; the last one starts the grace timer."""
        key = (session_id, user_id)
        entry = self._entries.get(key)
        if entry is None:
            return
        entry.connections.discard(connection_id or direct_connection_id(user_id))
        entry.touch()
        if entry.connections or entry.timer is not None:
            return
        entry.timer = asyncio.get_running_loop().create_task(
            self._expire_after_grace(entry),
            name=f"presence-grace-{session_id}-{user_id}",
        )
        logger.debug(
            "Grace timer started for %s on session %s (%.2fs)",
            user_id,
            session_id,
            self.grace_period_seconds,
        )

    async def leave(self, session_id: str, user_id: str) -> Participant:
        """Deactivate immediately, skipping the grace period."""
        async with self._locks.hold(session_id):
            with self._session_factory() as db:
                store = SessionStore(db)
                session = store.require_session(session_id)
                if session.status == SessionStatus.CLOSED:
                    raise SessionClosed(session_id)
                participant = store.get_participant(session_id, user_id)
                if participant is None:
                    raise participant_not_found(session_id, user_id)

                entry = self._entries.pop((session_id, user_id), None)
                if entry is not None:
                    entry.cancel_timer()

                if participant.is_active:
                    participant.is_active = False
                    participant.left_at = utcnow()
                    db.commit()
                    logger.info("Participant %s left session %s", user_id, session_id)
                    self._publish(SessionEventType.PARTICIPANT_LEFT, session_id, participant)
                return participant

    async def _expire_after_grace(self, entry: PresenceEntry) -> None:
        await asyncio.sleep(self.grace_period_seconds)
        key = (entry.session_id, entry.user_id)
        async with self._locks.hold(entry.session_id, timeout=None):
            if self._entries.get(key) is not entry or entry.connections:
                return
            # Detach from the entry so removal below cannot cancel this task.
            entry.timer = None
            self._entries.pop(key, None)
            try:
                with self._session_factory() as db:
                    store = SessionStore(db)
                    session = store.get_session(entry.session_id)
                    if session is None or session.status == SessionStatus.CLOSED:
                        return
                    participant = store.get_participant(entry.session_id, entry.user_id)
                    if participant is None or not participant.is_active:
                        return
                    participant.is_active = False
                    participant.left_at = utcnow()
                    participant.last_seen_at = entry.last_seen
                    db.commit()
                    logger.info(
                        "Participant %s timed out of session %s",
                        entry.user_id,
                        entry.session_id,
                    )
                    self._publish(
                        SessionEventType.PARTICIPANT_LEFT, entry.session_id, participant
                    )
            except Exception:
                logger.exception(
                    "Failed to expire presence for %s on session %s",
                    entry.user_id,
                    entry.session_id,
                )
                raise

    def _publish(
        self, kind: SessionEventType, session_id: str, participant: Participant
    ) -> None:
        self._hub.publish(
            SessionEvent(
                kind=kind,
                session_id=session_id,
                payload={
                    "participant": snapshot(ParticipantRead, participant),
                    "activeParticipants": self.list_active(session_id),
                },
            )
        )

    # ------------------------------------------------------------------ #
    # Maintenance
    # ------------------------------------------------------------------ #

    def release_session(self, session_id: str) -> None:
        """Forget a session without events, e.g. once it is closed."""
        for key in [key for key in self._entries if key[0] == session_id]:
            entry = self._entries.pop(key)
            entry.cancel_timer()

    def reset(self) -> int:
        """Clear stored active flags; nothing is connected when the process starts."""
        self._entries.clear()
        with self._session_factory() as db:
            count = SessionStore(db).deactivate_participants()
            db.commit()
        if count:
            logger.info("Reset %s stale active participant flags", count)
        return count

    async def settle(self) -> None:
        """Wait for every pending grace timer to fire or be cancelled."""
        timers = [
            entry.timer
            for entry in self._entries.values()
            if entry.timer is not None and not entry.timer.done()
        ]
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)

    async def shutdown(self) -> None:
        timers = []
        for entry in self._entries.values():
            if entry.timer is not None and not entry.timer.done():
                entry.timer.cancel()
                timers.append(entry.timer)
        self._entries.clear()
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)
