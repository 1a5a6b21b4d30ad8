"""
IntegrityIncident model - a detected break in a conversation's hash chain
"""
import uuid
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Text, Integer
from bloodchain.database import Base


class IntegrityIncident(Base):
    """Recorded whenever verification finds a broken chain; reviewed by admins"""

    __tablename__ = "integrity_incidents"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    conversation_id = Column(String(36), nullable=False, index=True)

    # Earliest offending sequence number
    broken_at = Column(Integer, nullable=False)
    reason = Column(Text, nullable=False)
    # genesis_mismatch, sequence_gap, sequence_duplicate, link_mismatch,
    # hash_mismatch, missing_messages, head_mismatch
    message_count = Column(Integer, nullable=False)

    detected_by = Column(String(64), nullable=True)
    detected_at = Column(DateTime, default=datetime.utcnow)
