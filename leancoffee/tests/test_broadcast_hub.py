import asyncio

import pytest

from leancoffee.services.broadcast import BroadcastHub, Connection
from leancoffee.services.events import SessionEvent, SessionEventType


@pytest.fixture
def anyio_backend():
    return "asyncio"


class _FakeSocket:
    def __init__(self, *, should_fail: bool = False, gate: asyncio.Event = None):
        self.messages = []
        self._should_fail = should_fail
        self._gate = gate

    async def send_json(self, message):
        if self._gate is not None:
            await self._gate.wait()
        if self._should_fail:
            raise RuntimeError("send failed")
        self.messages.append(message)


def _event(session_id: str, sequence: int) -> SessionEvent:
    return SessionEvent(
        kind=SessionEventType.NOTE_ADDED,
        session_id=session_id,
        payload={"note": {"sequence": sequence}},
    )


@pytest.mark.anyio("asyncio")
async def test_publish_reaches_only_subscribers_in_order():
    hub = BroadcastHub()
    following = _FakeSocket()
    elsewhere = _FakeSocket()
    conn_a = Connection(send_json=following.send_json, user_id="u1")
    conn_b = Connection(send_json=elsewhere.send_json, user_id="u2")
    hub.register(conn_a)
    hub.register(conn_b)
    hub.subscribe(conn_a.id, "LCS-1")
    hub.subscribe(conn_b.id, "LCS-2")

    for sequence in (1, 2, 3):
        hub.publish(_event("LCS-1", sequence))
    await hub.flush()

    assert [m["payload"]["note"]["sequence"] for m in following.messages] == [1, 2, 3]
    assert following.messages[0]["type"] == "note_added"
    assert following.messages[0]["payload"]["sessionId"] == "LCS-1"
    assert elsewhere.messages == []
    await hub.close()


@pytest.mark.anyio("asyncio")
async def test_full_queue_drops_slow_subscriber():
    hub = BroadcastHub(queue_size=1)
    gate = asyncio.Event()
    slow = Connection(send_json=_FakeSocket(gate=gate).send_json)
    fast_socket = _FakeSocket()
    fast = Connection(send_json=fast_socket.send_json)
    for connection in (slow, fast):
        hub.register(connection)
        hub.subscribe(connection.id, "LCS-1")

    assert hub.publish(_event("LCS-1", 1)) == 2
    # Neither writer has run yet, so the second event overflows both queues.
    hub.publish(_event("LCS-1", 2))

    assert not hub.is_registered(slow.id)
    assert not hub.is_registered(fast.id)
    assert hub.subscribers("LCS-1") == set()
    gate.set()
    await hub.close()


@pytest.mark.anyio("asyncio")
async def test_failed_send_drops_connection():
    hub = BroadcastHub()
    broken = Connection(send_json=_FakeSocket(should_fail=True).send_json)
    healthy_socket = _FakeSocket()
    healthy = Connection(send_json=healthy_socket.send_json)
    for connection in (broken, healthy):
        hub.register(connection)
        hub.subscribe(connection.id, "LCS-1")

    hub.publish(_event("LCS-1", 1))
    await hub.flush()
    await asyncio.sleep(0)

    assert not hub.is_registered(broken.id)
    assert hub.is_registered(healthy.id)
    assert len(healthy_socket.messages) == 1
    await hub.close()


@pytest.mark.anyio("asyncio")
async def test_listeners_filter_by_kind_and_never_break_publish():
    hub = BroadcastHub()
    ended = []

    def broken_listener(_event):
        raise RuntimeError("push service down")

    hub.add_listener(broken_listener)
    hub.add_listener(ended.append, kinds=[SessionEventType.SESSION_ENDED])

    hub.publish(_event("LCS-1", 1))
    hub.publish(SessionEvent(kind=SessionEventType.SESSION_ENDED, session_id="LCS-1"))

    assert [event.kind for event in ended] == [SessionEventType.SESSION_ENDED]

    hub.remove_listener(ended.append)
    hub.publish(SessionEvent(kind=SessionEventType.SESSION_ENDED, session_id="LCS-2"))
    assert len(ended) == 1


@pytest.mark.anyio("asyncio")
async def test_direct_send_and_unsubscribe():
    hub = BroadcastHub()
    socket = _FakeSocket()
    connection = Connection(send_json=socket.send_json)
    hub.register(connection)
    hub.subscribe(connection.id, "LCS-1")
    hub.subscribe(connection.id, "LCS-2")
    hub.unsubscribe(connection.id, "LCS-2")

    assert hub.send(connection.id, {"type": "pong", "payload": {}})
    hub.publish(_event("LCS-2", 1))
    await hub.flush()

    assert [message["type"] for message in socket.messages] == ["pong"]
    hub.unregister(connection.id)
    assert not hub.send(connection.id, {"type": "pong"})
    await hub.close()


@pytest.mark.anyio("asyncio")
async def test_dropped_connection_is_marked_detached():
    hub = BroadcastHub(queue_size=1)
    gate = asyncio.Event()
    slow = Connection(send_json=_FakeSocket(gate=gate).send_json)
    hub.register(slow)
    hub.subscribe(slow.id, "LCS-1")
    assert not slow.detached.is_set()

    hub.publish(_event("LCS-1", 1))
    hub.publish(_event("LCS-1", 2))

    await asyncio.wait_for(slow.detached.wait(), timeout=1.0)
    assert not hub.is_registered(slow.id)
    gate.set()
    await hub.close()
