"""
Bloodchain package initialization - SQLAlchemy models
"""
from bloodchain.database import Base
from bloodchain.models import (
    Organization,
    Conversation,
    ConversationMember,
    Message,
    MessageAttachment,
    IntegrityIncident,
)

__all__ = [
    "Base",
    "Organization",
    "Conversation",
    "ConversationMember",
    "Message",
    "MessageAttachment",
    "IntegrityIncident",
]
