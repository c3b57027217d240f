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


class TopicStatus(str, enum.Enum):
    TO_DISCUSS = "to_discuss"
    DISCUSSING = "discussing"
    DISCUSSED = "discussed"
    ARCHIVED = "archived"


class Topic(Base):
    __tablename__ = "lean_topics"
    __table_args__ = (
        UniqueConstraint("session_id", "display_order", name="uq_topic_display_order"),
    )

    topic_id = Column(String(40), primary_key=True, index=True)
    session_id = Column(
        String(20),
        ForeignKey("lean_sessions.session_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    submitted_by = Column(String(64), nullable=False)
    title = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    status = Column(
        Enum(
            TopicStatus,
            name="lean_topic_status",
            values_callable=lambda enum_cls: [member.value for member in enum_cls],
            native_enum=False,
        ),
        nullable=False,
        default=TopicStatus.TO_DISCUSS,
    )
    vote_count = Column(Integer, default=0, nullable=False)
    display_order = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)
    discussion_started_at = Column(DateTime(timezone=True), nullable=True)
    discussion_ended_at = Column(DateTime(timezone=True), nullable=True)

    session = relationship("LeanSession", back_populates="topics")
    votes = relationship(
        "TopicVote",
        back_populates="topic",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class TopicVote(Base):
    __tablename__ = "lean_topic_votes"
    __table_args__ = (
        UniqueConstraint("topic_id", "user_id", name="uq_topic_vote_user"),
    )

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(String(20), nullable=False, index=True)
    topic_id = Column(
        String(40),
        ForeignKey("lean_topics.topic_id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = Column(String(64), nullable=False, index=True)
    voted_at = Column(DateTime(timezone=True), nullable=False)

    topic = relationship("Topic", back_populates="votes")
