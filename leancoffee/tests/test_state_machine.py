import pytest

from leancoffee.data.session_store import SessionStore
from leancoffee.models.session import SessionStatus
from leancoffee.models.topic import TopicStatus
from leancoffee.services.errors import (
    Forbidden,
    InvalidTransition,
    NotFound,
    SessionClosed,
)
from leancoffee.services.events import SessionEventType

from conftest import ATTENDEE_ID, FACILITATOR_ID


def _kinds(events):
    return [event.kind for event in events]


@pytest.mark.anyio("asyncio")
async def test_full_lifecycle_moves_forward_and_emits_events(
    gateway, make_session, events, session_factory
):
    session_id = make_session()
    await gateway.presence.on_connect(session_id, FACILITATOR_ID)
    await gateway.presence.on_connect(session_id, ATTENDEE_ID)
    await gateway.ledger.append(session_id, ATTENDEE_ID, "Ship it", "decision")
    events.clear()

    started = await gateway.state_machine.start(session_id, FACILITATOR_ID)
    assert started.changed
    assert started.session.status == SessionStatus.IN_PROGRESS
    assert started.session.started_at is not None

    completed = await gateway.state_machine.complete(session_id, FACILITATOR_ID)
    assert completed.session.status == SessionStatus.COMPLETED
    assert completed.participant_count == 2
    assert completed.note_count == 1

    closed = await gateway.state_machine.close(session_id, FACILITATOR_ID)
    assert closed.session.status == SessionStatus.CLOSED
    assert closed.session.closed_at is not None

    assert _kinds(events) == [
        SessionEventType.STATUS_CHANGED,
        SessionEventType.STATUS_CHANGED,
        SessionEventType.SESSION_ENDED,
        SessionEventType.STATUS_CHANGED,
    ]
    ended = events[2]
    assert ended.payload["summary"] == {"participantCount": 2, "noteCount": 1}
    assert events[1].payload["previousStatus"] == "in_progress"
    assert events[1].payload["status"] == "completed"

    with session_factory() as db:
        participants = SessionStore(db).list_participants(session_id)
    assert all(not participant.is_active for participant in participants)
    assert gateway.presence.list_active(session_id) == []


@pytest.mark.anyio("asyncio")
async def test_non_facilitator_cannot_start(gateway, make_session, events, session_factory):
    session_id = make_session()
    await gateway.presence.on_connect(session_id, ATTENDEE_ID)
    events.clear()

    with pytest.raises(Forbidden):
        await gateway.state_machine.start(session_id, ATTENDEE_ID)

    with session_factory() as db:
        assert SessionStore(db).get_session(session_id).status == SessionStatus.DRAFT
    assert events == []


@pytest.mark.anyio("asyncio")
async def test_repeated_transition_is_a_silent_no_op(gateway, make_session, events):
    session_id = make_session()

    first = await gateway.state_machine.start(session_id, FACILITATOR_ID)
    second = await gateway.state_machine.start(session_id, FACILITATOR_ID)

    assert first.changed is True
    assert second.changed is False
    assert second.session.status == SessionStatus.IN_PROGRESS
    assert _kinds(events) == [SessionEventType.STATUS_CHANGED]


@pytest.mark.anyio("asyncio")
async def test_transitions_cannot_skip_or_reverse(gateway, make_session):
    session_id = make_session()

    with pytest.raises(InvalidTransition):
        await gateway.state_machine.complete(session_id, FACILITATOR_ID)
    with pytest.raises(InvalidTransition):
        await gateway.state_machine.close(session_id, FACILITATOR_ID)

    await gateway.state_machine.start(session_id, FACILITATOR_ID)
    await gateway.state_machine.complete(session_id, FACILITATOR_ID)
    with pytest.raises(InvalidTransition):
        await gateway.state_machine.start(session_id, FACILITATOR_ID)


@pytest.mark.anyio("asyncio")
async def test_closed_session_rejects_other_transitions(gateway, make_session):
    session_id = make_session()
    for step in ("start", "complete", "close"):
        await getattr(gateway.state_machine, step)(session_id, FACILITATOR_ID)

    with pytest.raises(SessionClosed):
        await gateway.state_machine.start(session_id, FACILITATOR_ID)
    with pytest.raises(SessionClosed):
        await gateway.state_machine.complete(session_id, FACILITATOR_ID)
    again = await gateway.state_machine.close(session_id, FACILITATOR_ID)
    assert again.changed is False


@pytest.mark.anyio("asyncio")
async def test_unknown_session_is_not_found(gateway):
    with pytest.raises(NotFound) as excinfo:
        await gateway.state_machine.start("LCS20990101-0001", FACILITATOR_ID)
    assert excinfo.value.error_code == "SESSION_NOT_FOUND"


@pytest.mark.anyio("asyncio")
async def test_facilitator_presence_policy(gateway, make_session):
    gateway.state_machine.require_facilitator_present = True
    session_id = make_session()

    with pytest.raises(Forbidden):
        await gateway.state_machine.start(session_id, FACILITATOR_ID)

    await gateway.presence.on_connect(session_id, FACILITATOR_ID)
    result = await gateway.state_machine.start(session_id, FACILITATOR_ID)
    assert result.session.status == SessionStatus.IN_PROGRESS


@pytest.mark.anyio("asyncio")
async def test_complete_finishes_the_topic_under_discussion(
    gateway, make_session, events, session_factory
):
    session_id = make_session()
    await gateway.presence.on_connect(session_id, FACILITATOR_ID)
    topic = await gateway.topics.submit(session_id, FACILITATOR_ID, "Remote rituals")
    await gateway.state_machine.start(session_id, FACILITATOR_ID)
    await gateway.topics.set_status(
        session_id, topic.topic_id, FACILITATOR_ID, TopicStatus.DISCUSSING
    )
    events.clear()

    await gateway.state_machine.complete(session_id, FACILITATOR_ID)

    with session_factory() as db:
        stored = SessionStore(db).get_topic(session_id, topic.topic_id)
    assert stored.status == TopicStatus.DISCUSSED
    assert stored.discussion_ended_at is not None
    assert events[0].kind == SessionEventType.TOPIC_STATUS_CHANGED
    assert events[0].payload["status"] == "discussed"
