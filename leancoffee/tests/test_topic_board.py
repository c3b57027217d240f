import pytest

from leancoffee.models.topic import TopicStatus
from leancoffee.services.errors import Forbidden, InvalidArgument, InvalidTransition, NotFound
from leancoffee.services.events import SessionEventType

from conftest import ATTENDEE_ID, FACILITATOR_ID, OTHER_ATTENDEE_ID


async def _open_board(gateway, make_session):
    session_id = make_session()
    for user_id in (FACILITATOR_ID, ATTENDEE_ID, OTHER_ATTENDEE_ID):
        await gateway.presence.on_connect(session_id, user_id)
    return session_id


@pytest.mark.anyio("asyncio")
async def test_submit_creates_backlog_topic(gateway, make_session, events):
    board_session = await _open_board(gateway, make_session)
    topic = await gateway.topics.submit(
        board_session, ATTENDEE_ID, "  Async standups  ", "Worth trying?"
    )

    assert topic.topic_id == f"{board_session}-T0001"
    assert topic.title == "Async standups"
    assert topic.status == TopicStatus.TO_DISCUSS
    assert events[-1].kind == SessionEventType.TOPIC_ADDED
    assert events[-1].payload["topic"]["title"] == "Async standups"

    with pytest.raises(InvalidArgument):
        await gateway.topics.submit(board_session, ATTENDEE_ID, "   ")
    with pytest.raises(Forbidden):
        await gateway.topics.submit(board_session, "stranger", "Sneaky topic")


@pytest.mark.anyio("asyncio")
async def test_votes_are_one_per_user_and_idempotent(gateway, make_session, events):
    board_session = await _open_board(gateway, make_session)
    topic = await gateway.topics.submit(board_session, ATTENDEE_ID, "Pairing")
    events.clear()

    first = await gateway.topics.cast_vote(board_session, topic.topic_id, ATTENDEE_ID)
    repeat = await gateway.topics.cast_vote(board_session, topic.topic_id, ATTENDEE_ID)
    other = await gateway.topics.cast_vote(board_session, topic.topic_id, OTHER_ATTENDEE_ID)

    assert first.changed and not repeat.changed and other.changed
    assert other.topic.vote_count == 2

    removed = await gateway.topics.remove_vote(board_session, topic.topic_id, ATTENDEE_ID)
    missing = await gateway.topics.remove_vote(board_session, topic.topic_id, ATTENDEE_ID)
    assert removed.topic.vote_count == 1
    assert missing.changed is False

    assert [event.kind for event in events] == [
        SessionEventType.VOTE_CAST,
        SessionEventType.VOTE_CAST,
        SessionEventType.VOTE_REMOVED,
    ]
    assert events[1].payload["voteCount"] == 2

    with pytest.raises(NotFound) as excinfo:
        await gateway.topics.cast_vote(board_session, "missing-topic", ATTENDEE_ID)
    assert excinfo.value.error_code == "TOPIC_NOT_FOUND"


@pytest.mark.anyio("asyncio")
async def test_discussion_flow(gateway, make_session):
    board_session = await _open_board(gateway, make_session)
    first = await gateway.topics.submit(board_session, ATTENDEE_ID, "First")
    second = await gateway.topics.submit(board_session, ATTENDEE_ID, "Second")

    with pytest.raises(InvalidTransition):
        await gateway.topics.set_status(
            board_session, first.topic_id, FACILITATOR_ID, TopicStatus.DISCUSSING
        )

    await gateway.state_machine.start(board_session, FACILITATOR_ID)
    with pytest.raises(Forbidden):
        await gateway.topics.set_status(
            board_session, first.topic_id, ATTENDEE_ID, TopicStatus.DISCUSSING
        )

    started = await gateway.topics.set_status(
        board_session, first.topic_id, FACILITATOR_ID, TopicStatus.DISCUSSING
    )
    assert started.changed
    assert started.topic.discussion_started_at is not None

    await gateway.topics.set_status(
        board_session, second.topic_id, FACILITATOR_ID, TopicStatus.DISCUSSING
    )
    statuses = {topic.topic_id: topic.status for topic in gateway.topics.list(board_session)}
    assert statuses == {
        first.topic_id: TopicStatus.DISCUSSED,
        second.topic_id: TopicStatus.DISCUSSING,
    }

    with pytest.raises(InvalidTransition):
        await gateway.topics.set_status(
            board_session, first.topic_id, FACILITATOR_ID, TopicStatus.DISCUSSING
        )
    with pytest.raises(InvalidTransition):
        await gateway.topics.cast_vote(board_session, first.topic_id, ATTENDEE_ID)

    archived = await gateway.topics.set_status(
        board_session, first.topic_id, FACILITATOR_ID, TopicStatus.ARCHIVED
    )
    assert archived.previous_status == TopicStatus.DISCUSSED
    same = await gateway.topics.set_status(
        board_session, first.topic_id, FACILITATOR_ID, TopicStatus.ARCHIVED
    )
    assert same.changed is False


@pytest.mark.anyio("asyncio")
async def test_backlog_ordering(gateway, make_session):
    board_session = await _open_board(gateway, make_session)
    low = await gateway.topics.submit(board_session, ATTENDEE_ID, "Low")
    high = await gateway.topics.submit(board_session, ATTENDEE_ID, "High")
    tie = await gateway.topics.submit(board_session, ATTENDEE_ID, "Tie")
    for user_id in (ATTENDEE_ID, OTHER_ATTENDEE_ID):
        await gateway.topics.cast_vote(board_session, high.topic_id, user_id)
    await gateway.topics.cast_vote(board_session, tie.topic_id, ATTENDEE_ID)
    await gateway.topics.cast_vote(board_session, low.topic_id, ATTENDEE_ID)
    await gateway.topics.set_status(
        board_session, low.topic_id, FACILITATOR_ID, TopicStatus.ARCHIVED
    )

    ordered = [topic.title for topic in gateway.topics.list(board_session)]

    assert ordered == ["High", "Tie", "Low"]
