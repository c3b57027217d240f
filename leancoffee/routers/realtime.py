import asyncio
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from leancoffee.auth.identity import resolve_websocket_identity
from leancoffee.services.broadcast import Connection
from leancoffee.services.errors import SessionCoreError
from leancoffee.services.gateway import SessionGateway, get_gateway

router = APIRouter(prefix="/ws", tags=["realtime"])

logger = logging.getLogger(__name__)

POLICY_VIOLATION = 1008
TRY_AGAIN_LATER = 1013


def _coerce_sequence(value) -> int:
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return 0


async def _close_when_detached(websocket: WebSocket, connection: Connection) -> None:
    """Close the socket as soon as the hub drops the connection as a slow consumer."""
    await connection.detached.wait()
    logger.info("Closing dropped connection %s", connection.id)
    try:
        await websocket.close(code=TRY_AGAIN_LATER, reason="Connection dropped")
    except RuntimeError as exc:
        # The client already went away.
        logger.debug("Close after drop skipped for %s: %s", connection.id, exc)


@router.websocket("/sessions/{session_id}")
async def session_socket(
    websocket: WebSocket,
    session_id: str,
    gateway: SessionGateway = Depends(get_gateway),
) -> None:
    """
    Realtime channel for one session.

    Every outbound message, including direct replies, goes through the
    connection's hub queue so events and replies keep a single order.
    """
    identity = resolve_websocket_identity(websocket)
    if identity is None:
        await websocket.close(code=POLICY_VIOLATION, reason="Invalid or missing token")
        return
    try:
        gateway.ensure_connectable(session_id)
    except SessionCoreError as exc:
        logger.info("Refusing socket for %s on %s: %s", identity.user_id, session_id, exc.message)
        await websocket.close(code=POLICY_VIOLATION, reason=exc.error_code)
        return

    await websocket.accept()
    connection = Connection(send_json=websocket.send_json, user_id=identity.user_id)
    try:
        await gateway.open_connection(
            session_id, connection, display_name=identity.display_name
        )
    except SessionCoreError as exc:
        logger.info("Socket open failed for %s on %s: %s", identity.user_id, session_id, exc.message)
        await websocket.close(code=POLICY_VIOLATION, reason=exc.error_code)
        return

    hub = gateway.hub
    watcher = asyncio.create_task(
        _close_when_detached(websocket, connection), name=f"socket-watch-{connection.id}"
    )

    def reply(message_type: str, **payload) -> bool:
        body = {"sessionId": session_id}
        body.update(payload)
        return hub.send(connection.id, {"type": message_type, "payload": body})

    try:
        while not connection.detached.is_set():
            try:
                message = await websocket.receive_json()
            except ValueError:
                reply("error", message="Messages must be JSON objects")
                continue
            if not isinstance(message, dict):
                reply("error", message="Messages must be JSON objects")
                continue
            message_type = message.get("type")
            payload = message.get("payload") or {}
            if not isinstance(payload, dict):
                payload = {}

            if message_type == "ping":
                gateway.presence.touch(session_id, identity.user_id)
                reply("pong", timestamp=datetime.now(timezone.utc).isoformat())
            elif message_type == "catch_up":
                after_sequence = _coerce_sequence(payload.get("afterSequence"))
                reply(
                    "notes",
                    afterSequence=after_sequence,
                    notes=gateway.catch_up(session_id, after_sequence),
                )
            elif message_type == "subscribe":
                target = str(payload.get("sessionId") or "").strip()
                try:
                    gateway.follow(connection.id, identity.user_id, target)
                except SessionCoreError as exc:
                    reply("error", message=exc.message, errorCode=exc.error_code)
                    continue
                reply("subscribed", targetSessionId=target)
            elif message_type == "unsubscribe":
                target = str(payload.get("sessionId") or "").strip()
                if target and target != session_id:
                    gateway.unfollow(connection.id, target)
                reply("unsubscribed", targetSessionId=target)
            else:
                reply(
                    "error",
                    message="Unknown message type",
                    receivedType=message_type,
                )
    except WebSocketDisconnect:
        logger.debug(
            "Socket closed: session_id=%s connection_id=%s", session_id, connection.id
        )
    finally:
        watcher.cancel()
        await gateway.close_connection(session_id, connection)
