from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, Optional

from .errors import Busy

logger = logging.getLogger(__name__)

_DEFAULT = object()


def _release_if_granted(lock: asyncio.Lock):
    def _callback(waiter: "asyncio.Future[bool]") -> None:
        if not waiter.cancelled() and waiter.exception() is None:
            lock.release()

    return _callback


async def _acquire_within(lock: asyncio.Lock, timeout: float) -> bool:
    """
    Try to take ``lock`` for at most ``timeout`` seconds.

    A grant that lands after the deadline is handed straight back, so a
    timed-out caller never leaves the lock held.
    """
    waiter = asyncio.ensure_future(lock.acquire())
    try:
        done, _ = await asyncio.wait({waiter}, timeout=timeout)
    except asyncio.CancelledError:
        if not waiter.cancel():
            waiter.add_done_callback(_release_if_granted(lock))
        raise
    if done:
        return waiter.result()
    if not waiter.cancel():
        waiter.add_done_callback(_release_if_granted(lock))
    return False


@dataclass
class _LockEntry:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    holders: int = 0


class SessionLockRegistry:
    """Per-session mutual exclusion; entries exist only while someone holds or waits."""

    def __init__(self, default_timeout: Optional[float] = None) -> None:
        self._default_timeout = default_timeout
        self._entries: Dict[str, _LockEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def is_locked(self, session_id: str) -> bool:
        entry = self._entries.get(session_id)
        return bool(entry and entry.lock.locked())

    @asynccontextmanager
    async def hold(self, session_id: str, timeout=_DEFAULT) -> AsyncIterator[None]:
        """
        Serialize work on ``session_id``.

        ``timeout`` defaults to the registry default; ``None`` waits without bound.
        Raises :class:`Busy` when the lock is not acquired in time.
        """
        if timeout is _DEFAULT:
            timeout = self._default_timeout
        entry = self._entries.get(session_id)
        if entry is None:
            entry = _LockEntry()
            self._entries[session_id] = entry
        entry.holders += 1
        try:
            if timeout is None:
                await entry.lock.acquire()
            elif not await _acquire_within(entry.lock, timeout):
                logger.warning(
                    "Lock wait for session %s exceeded %.2fs", session_id, timeout
                )
                raise Busy(session_id, timeout)
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            entry.holders -= 1
            if entry.holders == 0 and self._entries.get(session_id) is entry:
                del self._entries[session_id]
