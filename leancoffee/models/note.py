import enum

from sqlalchemy import (
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from ..database import Base


class NoteType(str, enum.Enum):
    GENERAL = "general"
    DECISION = "decision"
    ACTION_ITEM = "action_item"
    KEY_POINT = "key_point"


class Note(Base):
    __tablename__ = "lean_session_notes"
    __table_args__ = (
        UniqueConstraint("session_id", "sequence", name="uq_note_session_sequence"),
    )

    note_id = Column(String(40), primary_key=True, index=True)
    session_id = Column(
        String(20),
        ForeignKey("lean_sessions.session_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sequence = Column(Integer, nullable=False)
    author_id = Column(String(64), nullable=False, index=True)
    content = Column(Text, nullable=False)
    note_type = Column(
        Enum(
            NoteType,
            name="lean_note_type",
            values_callable=lambda enum_cls: [member.value for member in enum_cls],
            native_enum=False,
        ),
        nullable=False,
        default=NoteType.GENERAL,
    )
    topic_id = Column(
        String(40),
        ForeignKey("lean_topics.topic_id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    # Set explicitly by the ledger so ordering never depends on the database clock.
    created_at = Column(DateTime(timezone=True), nullable=False)

    session = relationship("LeanSession", back_populates="notes")
    topic = relationship("Topic")

    def __repr__(self) -> str:
        return (
            f"Note(note_id={self.note_id!r}, sequence={self.sequence}, "
            f"note_type={self.note_type!r})"
        )
