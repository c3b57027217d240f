from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict

from pydantic import BaseModel

JSONCompatibleDict = Dict[str, Any]


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SessionEventType(str, enum.Enum):
    PARTICIPANT_JOINED = "participant_joined"
    PARTICIPANT_ACTIVE = "participant_active"
    PARTICIPANT_LEFT = "participant_left"
    STATUS_CHANGED = "status_changed"
    NOTE_ADDED = "note_added"
    SESSION_ENDED = "session_ended"
    TOPIC_ADDED = "topic_added"
    TOPIC_STATUS_CHANGED = "topic_status_changed"
    VOTE_CAST = "vote_cast"
    VOTE_REMOVED = "vote_removed"


def snapshot(schema: type[BaseModel], entity: Any) -> JSONCompatibleDict:
    """Serialize an ORM row through its read schema into camelCase JSON."""
    return schema.model_validate(entity).model_dump(mode="json", by_alias=True)


@dataclass
class SessionEvent:
    kind: SessionEventType
    session_id: str
    payload: JSONCompatibleDict = field(default_factory=dict)
    occurred_at: datetime = field(default_factory=_now)

    def to_message(self) -> JSONCompatibleDict:
        """Return the websocket wire shape of this event."""
        body = {
            "sessionId": self.session_id,
            "timestamp": self.occurred_at.isoformat(),
        }
        body.update(self.payload)
        return {"type": self.kind.value, "payload": body}
