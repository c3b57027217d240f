from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from leancoffee.models.session import LeanSession

SESSION_ID_PREFIX = "LCS"
SESSION_ID_SUFFIX_WIDTH = 4
NOTE_SEQUENCE_WIDTH = 5
TOPIC_SEQUENCE_WIDTH = 4


def _format_base36(number: int) -> str:
    if number < 0:
        raise ValueError("number must be non-negative")
    digits = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"
    if number == 0:
        return "0"
    result = []
    while number:
        number, remainder = divmod(number, 36)
        result.append(digits[remainder])
    return "".join(reversed(result))


def _next_session_sequence(db: Session, date_prefix: str) -> int:
    like_pattern = f"{date_prefix}-%"
    latest: Optional[str] = (
        db.query(LeanSession.session_id)
        .filter(LeanSession.session_id.like(like_pattern))
        .order_by(LeanSession.session_id.desc())
        .limit(1)
        .scalar()
    )
    if not latest:
        return 1
    try:
        suffix = latest.split("-")[-1]
        return int(suffix, 36) + 1
    except (ValueError, IndexError):
        return 1


def generate_session_id(db: Session, created_at: Optional[datetime] = None) -> str:
    """
    Construct a unique session identifier with the format LCSYYYYMMDD-XXXX
    where the suffix is a zero-padded base36 sequence scoped to the given day.
    """
    timestamp = (created_at or datetime.now(timezone.utc)).astimezone(timezone.utc)
    date_prefix = f"{SESSION_ID_PREFIX}{timestamp:%Y%m%d}"
    sequence = _next_session_sequence(db, date_prefix)
    suffix = _format_base36(sequence).upper().rjust(SESSION_ID_SUFFIX_WIDTH, "0")
    return f"{date_prefix}-{suffix}"


def build_note_id(session_id: str, sequence: int) -> str:
    return f"{session_id}-N{sequence:0{NOTE_SEQUENCE_WIDTH}d}"


def build_topic_id(session_id: str, display_order: int) -> str:
    return f"{session_id}-T{display_order:0{TOPIC_SEQUENCE_WIDTH}d}"
