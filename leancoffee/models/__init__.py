# Import models to make them accessible via leancoffee.models
# and ensure they are registered with SQLAlchemy's Base metadata
from .session import LeanSession, Participant, ParticipantRole, SessionStatus
from .note import Note, NoteType
from .topic import Topic, TopicStatus, TopicVote

__all__ = [
    "LeanSession",
    "Participant",
    "ParticipantRole",
    "SessionStatus",
    "Note",
    "NoteType",
    "Topic",
    "TopicStatus",
    "TopicVote",
]
