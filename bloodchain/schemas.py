"""
Pydantic schemas for the communication API

Field names are snake_case in Python and camelCase on the wire.
"""
from datetime import datetime
from typing import Generic, List, Optional, TypeVar

from pydantic import BaseModel
from pydantic.alias_generators import to_camel


T = TypeVar("T")


class CamelModel(BaseModel):
    class Config:
        from_attributes = True
        alias_generator = to_camel
        populate_by_name = True


class DataResponse(BaseModel, Generic[T]):
    """Envelope every endpoint responds with"""
    data: T


class AttachmentResponse(CamelModel):
    id: str
    file_name: str
    file_type: str
    file_size: int
    sha256: str
    url: str
    ocr_text: Optional[str] = None


class MessageResponse(CamelModel):
    id: str
    conversation_id: str
    sender_id: str
    sender_name: str
    sender_type: str
    receiver_id: str
    receiver_name: str
    message_type: str
    content: str
    attachments: List[AttachmentResponse] = []
    sos_id: Optional[str] = None
    is_read: bool
    read_at: Optional[datetime] = None
    sequence_number: int
    previous_hash: str
    current_hash: str
    created_at: datetime


class ConversationResponse(CamelModel):
    conversation_id: str
    partner_id: str
    partner_name: str
    partner_type: str
    last_message: Optional[MessageResponse] = None
    unread_count: int
    sos_id: Optional[str] = None
    updated_at: datetime


class VerificationResponse(CamelModel):
    is_valid: bool
    message_count: int
    broken_at: Optional[int] = None


class UnreadCountResponse(CamelModel):
    count: int


class IncidentResponse(CamelModel):
    id: str
    conversation_id: str
    broken_at: int
    reason: str
    message_count: int
    detected_by: Optional[str] = None
    detected_at: datetime


class ConversationHeadResponse(CamelModel):
    id: str
    tail_sequence: int
    tail_hash: str
    last_message_id: Optional[str] = None
    sos_id: Optional[str] = None
    updated_at: Optional[datetime] = None
