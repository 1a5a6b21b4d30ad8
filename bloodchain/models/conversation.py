"""
Conversation model - derived head of a two-party ledger
"""
import uuid
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Integer, ForeignKey
from sqlalchemy.orm import relationship
from bloodchain.database import Base


# Namespace for deriving stable conversation ids from participant pairs
CONVERSATION_NAMESPACE = uuid.UUID("6f1c2d4e-8b3a-5c7d-9e0f-a1b2c3d4e5f6")


def conversation_id_for(first_id: str, second_id: str) -> str:
    """Stable id for the channel between two participants, order-independent"""
    low, high = sorted((first_id, second_id))
    return str(uuid.uuid5(CONVERSATION_NAMESPACE, f"{low}|{high}"))


class Conversation(Base):
    """
    Head row of a conversation.

    Holds the tail pointer that appends compare-and-swap against and the
    summary fields the conversation list is served from. The messages table
    remains the source of truth; this row can be rebuilt from it.
    """

    __tablename__ = "conversations"

    id = Column(String(36), primary_key=True)
    participant_low = Column(String(64), nullable=False)
    participant_high = Column(String(64), nullable=False)

    # Tail pointer (-1 / genesis while empty)
    tail_sequence = Column(Integer, nullable=False, default=-1)
    tail_hash = Column(String(64), nullable=False)
    last_message_id = Column(String(36), nullable=True)

    sos_id = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)

    members = relationship("ConversationMember", back_populates="conversation", cascade="all, delete-orphan")

    def has_participant(self, participant_id: str) -> bool:
        return participant_id in (self.participant_low, self.participant_high)

    def partner_of(self, participant_id: str) -> str:
        if participant_id == self.participant_low:
            return self.participant_high
        return self.participant_low


class ConversationMember(Base):
    """Per-participant view of a conversation (unread counter)"""

    __tablename__ = "conversation_members"

    conversation_id = Column(String(36), ForeignKey("conversations.id"), primary_key=True)
    participant_id = Column(String(64), primary_key=True, index=True)
    partner_id = Column(String(64), nullable=False)
    unread_count = Column(Integer, nullable=False, default=0)

    conversation = relationship("Conversation", back_populates="members")
