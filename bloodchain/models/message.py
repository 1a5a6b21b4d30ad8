"""
Message model - one immutable link in a conversation's hash chain
"""
import uuid
from datetime import datetime
from sqlalchemy import (
    Column, String, DateTime, Text, Integer, BigInteger, Boolean, ForeignKey,
    UniqueConstraint, event, inspect,
)
from sqlalchemy.orm import relationship
from bloodchain.database import Base
from bloodchain.exceptions import ValidationError


MESSAGE_TYPES = ("text", "document", "blood_request", "blood_response", "status_update")

# Read receipts are the only fields allowed to change after append
MUTABLE_FIELDS = {"is_read", "read_at"}


class Message(Base):
    """Represents a message appended to a two-party conversation ledger"""

    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("conversation_id", "sequence_number", name="uq_messages_conversation_sequence"),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    conversation_id = Column(String(36), nullable=False, index=True)

    # Parties
    sender_id = Column(String(64), nullable=False)
    sender_name = Column(String(255), nullable=False)
    sender_type = Column(String(20), nullable=False)  # hospital, bloodbank, admin
    receiver_id = Column(String(64), nullable=False, index=True)
    receiver_name = Column(String(255), nullable=False)

    # Payload
    message_type = Column(String(32), nullable=False, default="text")
    content = Column(Text, nullable=False, default="")
    sos_id = Column(String(64), nullable=True, index=True)

    # Read receipt
    is_read = Column(Boolean, nullable=False, default=False)
    read_at = Column(DateTime, nullable=True)

    # Chain
    sequence_number = Column(Integer, nullable=False)
    previous_hash = Column(String(64), nullable=False)
    current_hash = Column(String(64), nullable=False)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    attachments = relationship(
        "MessageAttachment",
        back_populates="message",
        order_by="MessageAttachment.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class MessageAttachment(Base):
    """A file attached to a message; bytes live in content-addressed storage"""

    __tablename__ = "message_attachments"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    message_id = Column(String(36), ForeignKey("messages.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False, default=0)

    file_name = Column(String(255), nullable=False)
    file_type = Column(String(128), nullable=False)
    file_size = Column(BigInteger, nullable=False)
    sha256 = Column(String(64), nullable=False, index=True)
    url = Column(String(512), nullable=False)
    ocr_text = Column(Text, nullable=True)

    message = relationship("Message", back_populates="attachments")


@event.listens_for(Message, "before_update")
def _reject_ledger_mutation(mapper, connection, target):
    """Refuse ORM updates to anything but the read receipt"""
    state = inspect(target)
    changed = {
        attr.key for attr in state.attrs
        if attr.key not in MUTABLE_FIELDS
        and attr.key != "attachments"
        and attr.history.has_changes()
    }
    if changed:
        raise ValidationError(f"Messages are append-only; cannot modify {sorted(changed)}")
