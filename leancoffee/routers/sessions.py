import logging
from typing import Optional, Union

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse

from leancoffee.auth.identity import Identity, get_current_identity
from leancoffee.models.session import SessionStatus
from leancoffee.schemas.envelope import AppResult, PagedResults
from leancoffee.schemas.session import (
    NoteCreate,
    SessionCreate,
    TopicCreate,
    TopicStatusUpdate,
)
from leancoffee.services.gateway import SessionGateway, get_gateway

router = APIRouter(prefix="/api/sessions", tags=["sessions"])

logger = logging.getLogger(__name__)


def respond(result: Union[AppResult, PagedResults]) -> JSONResponse:
    """Render an envelope with the HTTP status mapped from its outcome."""
    return JSONResponse(
        status_code=result.status_code,
        content=result.model_dump(mode="json", by_alias=True),
    )


# --------------------------------------------------------------------------- #
# Sessions
# --------------------------------------------------------------------------- #


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_session(
    payload: SessionCreate,
    identity: Identity = Depends(get_current_identity),
    gateway: SessionGateway = Depends(get_gateway),
):
    result = await gateway.create_session(
        identity.user_id, payload, display_name=identity.display_name
    )
    return respond(result)


@router.get("")
async def list_sessions(
    status_filter: Optional[SessionStatus] = Query(None, alias="status"),
    facilitator_id: Optional[str] = Query(None),
    mine: bool = Query(False),
    page: int = Query(1, ge=1),
    page_size: Optional[int] = Query(None, ge=1),
    identity: Identity = Depends(get_current_identity),
    gateway: SessionGateway = Depends(get_gateway),
):
    result = await gateway.list_sessions(
        identity.user_id,
        status=status_filter,
        facilitator_id=facilitator_id,
        mine=mine,
        page=page,
        page_size=page_size,
    )
    return respond(result)


@router.get("/{session_id}")
async def get_session(
    session_id: str,
    identity: Identity = Depends(get_current_identity),
    gateway: SessionGateway = Depends(get_gateway),
):
    return respond(await gateway.get_session(identity.user_id, session_id))


@router.post("/{session_id}/start")
async def start_session(
    session_id: str,
    identity: Identity = Depends(get_current_identity),
    gateway: SessionGateway = Depends(get_gateway),
):
    return respond(await gateway.start_session(identity.user_id, session_id))


@router.post("/{session_id}/complete")
async def complete_session(
    session_id: str,
    identity: Identity = Depends(get_current_identity),
    gateway: SessionGateway = Depends(get_gateway),
):
    return respond(await gateway.complete_session(identity.user_id, session_id))


@router.post("/{session_id}/close")
async def close_session(
    session_id: str,
    identity: Identity = Depends(get_current_identity),
    gateway: SessionGateway = Depends(get_gateway),
):
    return respond(await gateway.close_session(identity.user_id, session_id))


@router.get("/{session_id}/export")
async def export_session(
    session_id: str,
    identity: Identity = Depends(get_current_identity),
    gateway: SessionGateway = Depends(get_gateway),
):
    return respond(await gateway.export_session(identity.user_id, session_id))


# --------------------------------------------------------------------------- #
# Participants
# --------------------------------------------------------------------------- #


@router.post("/{session_id}/join")
async def join_session(
    session_id: str,
    identity: Identity = Depends(get_current_identity),
    gateway: SessionGateway = Depends(get_gateway),
):
    result = await gateway.join_session(
        identity.user_id, session_id, display_name=identity.display_name
    )
    return respond(result)


@router.post("/{session_id}/leave")
async def leave_session(
    session_id: str,
    identity: Identity = Depends(get_current_identity),
    gateway: SessionGateway = Depends(get_gateway),
):
    return respond(await gateway.leave_session(identity.user_id, session_id))


@router.get("/{session_id}/participants")
async def list_participants(
    session_id: str,
    identity: Identity = Depends(get_current_identity),
    gateway: SessionGateway = Depends(get_gateway),
):
    return respond(await gateway.list_participants(identity.user_id, session_id))


@router.get("/{session_id}/participants/active")
async def list_active_participants(
    session_id: str,
    identity: Identity = Depends(get_current_identity),
    gateway: SessionGateway = Depends(get_gateway),
):
    return respond(await gateway.list_active_participants(identity.user_id, session_id))


# --------------------------------------------------------------------------- #
# Notes
# --------------------------------------------------------------------------- #


@router.post("/{session_id}/notes", status_code=status.HTTP_201_CREATED)
async def append_note(
    session_id: str,
    payload: NoteCreate,
    identity: Identity = Depends(get_current_identity),
    gateway: SessionGateway = Depends(get_gateway),
):
    return respond(await gateway.append_note(identity.user_id, session_id, payload))


@router.get("/{session_id}/notes")
async def list_notes(
    session_id: str,
    after_sequence: int = Query(0, ge=0),
    limit: Optional[int] = Query(None, ge=1),
    identity: Identity = Depends(get_current_identity),
    gateway: SessionGateway = Depends(get_gateway),
):
    result = await gateway.list_notes(
        identity.user_id, session_id, after_sequence=after_sequence, limit=limit
    )
    return respond(result)


# --------------------------------------------------------------------------- #
# Topics
# --------------------------------------------------------------------------- #


@router.post("/{session_id}/topics", status_code=status.HTTP_201_CREATED)
async def submit_topic(
    session_id: str,
    payload: TopicCreate,
    identity: Identity = Depends(get_current_identity),
    gateway: SessionGateway = Depends(get_gateway),
):
    return respond(await gateway.submit_topic(identity.user_id, session_id, payload))


@router.get("/{session_id}/topics")
async def list_topics(
    session_id: str,
    identity: Identity = Depends(get_current_identity),
    gateway: SessionGateway = Depends(get_gateway),
):
    return respond(await gateway.list_topics(identity.user_id, session_id))


@router.post("/{session_id}/topics/{topic_id}/vote")
async def vote_topic(
    session_id: str,
    topic_id: str,
    identity: Identity = Depends(get_current_identity),
    gateway: SessionGateway = Depends(get_gateway),
):
    return respond(await gateway.vote_topic(identity.user_id, session_id, topic_id))


@router.delete("/{session_id}/topics/{topic_id}/vote")
async def unvote_topic(
    session_id: str,
    topic_id: str,
    identity: Identity = Depends(get_current_identity),
    gateway: SessionGateway = Depends(get_gateway),
):
    return respond(await gateway.unvote_topic(identity.user_id, session_id, topic_id))


@router.put("/{session_id}/topics/{topic_id}/status")
async def set_topic_status(
    session_id: str,
    topic_id: str,
    payload: TopicStatusUpdate,
    identity: Identity = Depends(get_current_identity),
    gateway: SessionGateway = Depends(get_gateway),
):
    result = await gateway.set_topic_status(
        identity.user_id, session_id, topic_id, payload.status
    )
    return respond(result)
