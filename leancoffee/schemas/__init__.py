from .envelope import AppResult, CamelModel, PagedResults, ValidationErrorItem
from .session import (
    NoteCreate,
    NoteRead,
    ParticipantRead,
    SessionCreate,
    SessionDetail,
    SessionExport,
    SessionRead,
    SessionSummary,
    TopicCreate,
    TopicRead,
    TopicStatusUpdate,
)

__all__ = [
    "AppResult",
    "CamelModel",
    "PagedResults",
    "ValidationErrorItem",
    "NoteCreate",
    "NoteRead",
    "ParticipantRead",
    "SessionCreate",
    "SessionDetail",
    "SessionExport",
    "SessionRead",
    "SessionSummary",
    "TopicCreate",
    "TopicRead",
    "TopicStatusUpdate",
]
