"""Models package initialization"""
from bloodchain.models.organization import Organization
from bloodchain.models.conversation import Conversation, ConversationMember
from bloodchain.models.message import Message, MessageAttachment
from bloodchain.models.incident import IntegrityIncident

__all__ = [
    "Organization",
    "Conversation",
    "ConversationMember",
    "Message",
    "MessageAttachment",
    "IntegrityIncident",
]
