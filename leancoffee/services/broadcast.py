from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set
from uuid import uuid4

from .events import JSONCompatibleDict, SessionEvent, SessionEventType

logger = logging.getLogger(__name__)

SendJSON = Callable[[JSONCompatibleDict], Awaitable[Any]]
EventListener = Callable[[SessionEvent], Any]


@dataclass
class Connection:
    """A live client connection the hub can push messages to."""

    send_json: SendJSON
    user_id: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid4()))
    # Set once the hub stops delivering to this connection.
    detached: asyncio.Event = field(default_factory=asyncio.Event)


@dataclass
class _Registration:
    connection: Connection
    queue: "asyncio.Queue[JSONCompatibleDict]"
    sessions: Set[str] = field(default_factory=set)
    writer: Optional["asyncio.Task[None]"] = None


@dataclass
class _Listener:
    callback: EventListener
    kinds: Optional[Set[SessionEventType]] = None

    def accepts(self, event: SessionEvent) -> bool:
        return self.kinds is None or event.kind in self.kinds


class BroadcastHub:
    """Fans session events out to subscribed connections without blocking publishers."""

    def __init__(self, queue_size: int = 256) -> None:
        self._queue_size = queue_size
        self._registrations: Dict[str, _Registration] = {}
        # Key: session_id, Value: subscribed connection ids
        self._subscribers: Dict[str, Set[str]] = {}
        self._listeners: List[_Listener] = []
        self._listener_tasks: Set["asyncio.Task[Any]"] = set()

    # ------------------------------------------------------------------ #
    # Connection lifecycle
    # ------------------------------------------------------------------ #

    def register(self, connection: Connection) -> str:
        """Register a connection and start its writer task; returns the connection id."""
        if connection.id in self._registrations:
            return connection.id
        registration = _Registration(
            connection=connection,
            queue=asyncio.Queue(maxsize=self._queue_size),
        )
        registration.writer = asyncio.get_running_loop().create_task(
            self._drain(registration), name=f"broadcast-writer-{connection.id}"
        )
        self._registrations[connection.id] = registration
        logger.debug(
            "Connection registered: connection_id=%s user_id=%s",
            connection.id,
            connection.user_id,
        )
        return connection.id

    def unregister(self, connection_id: str) -> None:
        registration = self._registrations.pop(connection_id, None)
        if registration is None:
            return
        for session_id in list(registration.sessions):
            self._discard_subscriber(session_id, connection_id)
        if registration.writer is not None and not registration.writer.done():
            registration.writer.cancel()
        self._discard_pending(registration)
        registration.connection.detached.set()
        logger.debug("Connection unregistered: connection_id=%s", connection_id)

    def subscribe(self, connection_id: str, session_id: str) -> bool:
        registration = self._registrations.get(connection_id)
        if registration is None:
            return False
        registration.sessions.add(session_id)
        self._subscribers.setdefault(session_id, set()).add(connection_id)
        return True

    def unsubscribe(self, connection_id: str, session_id: str) -> None:
        registration = self._registrations.get(connection_id)
        if registration is not None:
            registration.sessions.discard(session_id)
        self._discard_subscriber(session_id, connection_id)

    def _discard_subscriber(self, session_id: str, connection_id: str) -> None:
        subscribers = self._subscribers.get(session_id)
        if not subscribers:
            return
        subscribers.discard(connection_id)
        if not subscribers:
            self._subscribers.pop(session_id, None)

    def subscribers(self, session_id: str) -> Set[str]:
        return set(self._subscribers.get(session_id, set()))

    def is_registered(self, connection_id: str) -> bool:
        return connection_id in self._registrations

    # ------------------------------------------------------------------ #
    # Listeners
    # ------------------------------------------------------------------ #

    def add_listener(
        self,
        callback: EventListener,
        kinds: Optional[Iterable[SessionEventType]] = None,
    ) -> None:
        """Register an in-process observer, e.g. a push notification sender."""
        self._listeners.append(
            _Listener(callback=callback, kinds=set(kinds) if kinds is not None else None)
        )

    def remove_listener(self, callback: EventListener) -> None:
        self._listeners = [item for item in self._listeners if item.callback != callback]

    # ------------------------------------------------------------------ #
    # Delivery
    # ------------------------------------------------------------------ #

    def publish(self, event: SessionEvent) -> int:
        """
        Enqueue ``event`` for every subscriber of its session.

        Never awaits. A subscriber whose queue is full is dropped and must catch
        up from the note ledger. Returns the number of connections enqueued.
        """
        message = event.to_message()
        delivered = 0
        for connection_id in list(self._subscribers.get(event.session_id, ())):
            registration = self._registrations.get(connection_id)
            if registration is None:
                self._discard_subscriber(event.session_id, connection_id)
                continue
            try:
                registration.queue.put_nowait(message)
            except asyncio.QueueFull:
                logger.warning(
                    "Dropping slow subscriber %s on session %s",
                    connection_id,
                    event.session_id,
                )
                self.unregister(connection_id)
                continue
            delivered += 1

        for listener in list(self._listeners):
            if not listener.accepts(event):
                continue
            try:
                result = listener.callback(event)
                if asyncio.iscoroutine(result):
                    task = asyncio.get_running_loop().create_task(result)
                    self._listener_tasks.add(task)
                    task.add_done_callback(self._listener_done)
            except Exception:  # noqa: BLE001
                logger.exception(
                    "Event listener failed for %s on session %s",
                    event.kind.value,
                    event.session_id,
                )
        return delivered

    def send(self, connection_id: str, message: JSONCompatibleDict) -> bool:
        """Queue a direct reply behind any events already pending for the connection."""
        registration = self._registrations.get(connection_id)
        if registration is None:
            return False
        try:
            registration.queue.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning("Dropping slow connection %s on direct reply", connection_id)
            self.unregister(connection_id)
            return False
        return True

    def _listener_done(self, task: "asyncio.Task[Any]") -> None:
        self._listener_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Async event listener failed", exc_info=exc)

    async def _drain(self, registration: _Registration) -> None:
        connection = registration.connection
        while True:
            message = await registration.queue.get()
            try:
                await connection.send_json(message)
            except asyncio.CancelledError:
                registration.queue.task_done()
                raise
            except Exception:  # noqa: BLE001
                registration.queue.task_done()
                logger.info(
                    "Send failed; dropping connection %s", connection.id, exc_info=True
                )
                registration.writer = None
                self.unregister(connection.id)
                return
            registration.queue.task_done()

    @staticmethod
    def _discard_pending(registration: _Registration) -> None:
        while True:
            try:
                registration.queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            registration.queue.task_done()

    async def flush(self) -> None:
        """Wait until every registered connection has drained its queue."""
        for registration in list(self._registrations.values()):
            await registration.queue.join()

    async def close(self) -> None:
        writers = []
        for connection_id in list(self._registrations):
            registration = self._registrations.get(connection_id)
            if registration and registration.writer is not None:
                writers.append(registration.writer)
            self.unregister(connection_id)
        if writers:
            await asyncio.gather(*writers, return_exceptions=True)
