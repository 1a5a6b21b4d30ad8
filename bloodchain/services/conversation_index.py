"""
Conversation Index
Per-participant conversation summaries derived from the message ledger
"""
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Tuple

import structlog
from sqlalchemy import func
from sqlalchemy.orm import Session

from bloodchain.exceptions import AuthorizationError, NotFoundError
from bloodchain.models import Organization, Conversation, ConversationMember, Message
from bloodchain.models.conversation import conversation_id_for
from bloodchain.services.hashing import GENESIS_HASH

logger = structlog.get_logger()


@dataclass
class ConversationSummary:
    """One row of a participant's conversation list"""
    conversation_id: str
    partner_id: str
    partner_name: str
    partner_type: str
    last_message: Optional[Message]
    unread_count: int
    sos_id: Optional[str]
    updated_at: datetime


def on_append(db: Session, message: Message) -> None:
    """Fold a freshly appended message into the summaries (same transaction)"""
    values = {
        Conversation.last_message_id: message.id,
        Conversation.updated_at: message.created_at,
    }
    if message.sos_id:
        values[Conversation.sos_id] = message.sos_id

    db.query(Conversation)\
        .filter(Conversation.id == message.conversation_id)\
        .update(values, synchronize_session=False)

    db.query(ConversationMember)\
        .filter(
            ConversationMember.conversation_id == message.conversation_id,
            ConversationMember.participant_id == message.receiver_id,
        )\
        .update({ConversationMember.unread_count: ConversationMember.unread_count + 1}, synchronize_session=False)


def list_conversations(db: Session, participant_id: str) -> List[ConversationSummary]:
    """Conversations of a participant, most recently updated first"""
    rows = db.query(ConversationMember, Conversation)\
        .join(Conversation, Conversation.id == ConversationMember.conversation_id)\
        .filter(
            ConversationMember.participant_id == participant_id,
            Conversation.last_message_id.isnot(None),
        )\
        .order_by(Conversation.updated_at.desc())\
        .all()
    if not rows:
        return []

    partner_ids = {member.partner_id for member, _ in rows}
    partners = {
        org.id: org
        for org in db.query(Organization).filter(Organization.id.in_(partner_ids)).all()
    }
    last_ids = [conversation.last_message_id for _, conversation in rows]
    last_messages = {
        m.id: m
        for m in db.query(Message).filter(Message.id.in_(last_ids)).all()
    }

    summaries = []
    for member, conversation in rows:
        partner = partners.get(member.partner_id)
        last = last_messages.get(conversation.last_message_id)
        summaries.append(ConversationSummary(
            conversation_id=conversation.id,
            partner_id=member.partner_id,
            partner_name=partner.name if partner else _name_from_message(last, member.partner_id),
            partner_type=partner.org_type if partner else "unknown",
            last_message=last,
            unread_count=max(0, member.unread_count),
            sos_id=conversation.sos_id,
            updated_at=conversation.updated_at,
        ))
    return summaries


def _name_from_message(message: Optional[Message], partner_id: str) -> str:
    if message is None:
        return partner_id
    if message.sender_id == partner_id:
        return message.sender_name
    return message.receiver_name


def conversation_messages(db: Session, participant_id: str, partner_id: str) -> List[Message]:
    """The two-party channel between caller and partner, in ledger order"""
    partner = db.query(Organization).filter(Organization.id == partner_id).first()
    if not partner:
        raise NotFoundError(f"Partner not found: {partner_id}")

    conversation_id = conversation_id_for(participant_id, partner_id)
    return db.query(Message)\
        .filter(Message.conversation_id == conversation_id)\
        .order_by(Message.sequence_number)\
        .all()


def sos_audit_trail(db: Session, sos_id: str, viewer: Organization) -> List[Message]:
    """
    Messages tagged with an SOS across conversations

    Admins see every tagged message; other organizations only those of
    conversations they take part in.
    """
    query = db.query(Message).filter(Message.sos_id == sos_id)
    if not viewer.is_admin:
        query = query.filter((Message.sender_id == viewer.id) | (Message.receiver_id == viewer.id))
    return query.order_by(Message.created_at, Message.conversation_id, Message.sequence_number).all()


def mark_read(db: Session, message_id: str, reader_id: str) -> Tuple[Message, bool]:
    """
    Mark a message read by its receiver

    Returns the message and whether this call performed the transition.
    Re-marking is a no-op.
    """
    message = db.query(Message).filter(Message.id == message_id).first()
    if not message:
        raise NotFoundError(f"Message not found: {message_id}")
    if message.receiver_id != reader_id:
        raise AuthorizationError("Only the receiver can mark a message as read")
    if message.is_read:
        return message, False

    # Conditional update so concurrent calls transition exactly once
    updated = db.query(Message)\
        .filter(Message.id == message_id, Message.is_read == False)\
        .update({Message.is_read: True, Message.read_at: datetime.utcnow()}, synchronize_session=False)
    if updated:
        db.query(ConversationMember)\
            .filter(
                ConversationMember.conversation_id == message.conversation_id,
                ConversationMember.participant_id == reader_id,
                ConversationMember.unread_count > 0,
            )\
            .update({ConversationMember.unread_count: ConversationMember.unread_count - 1}, synchronize_session=False)
    db.commit()
    db.refresh(message)

    if updated:
        logger.info("message_read", message_id=message_id, conversation_id=message.conversation_id)
    return message, bool(updated)


def unread_count(db: Session, participant_id: str) -> int:
    """Unread messages addressed to a participant across all conversations"""
    total = db.query(func.coalesce(func.sum(ConversationMember.unread_count), 0))\
        .filter(ConversationMember.participant_id == participant_id)\
        .scalar()
    return int(total or 0)


def rebuild(db: Session, conversation_id: str) -> Conversation:
    """Recompute a conversation's head and unread counters from its messages"""
    conversation = db.query(Conversation).filter(Conversation.id == conversation_id).first()
    if not conversation:
        raise NotFoundError(f"Conversation not found: {conversation_id}")

    tail = db.query(Message)\
        .filter(Message.conversation_id == conversation_id)\
        .order_by(Message.sequence_number.desc())\
        .first()
    latest_sos = db.query(Message.sos_id)\
        .filter(Message.conversation_id == conversation_id, Message.sos_id.isnot(None))\
        .order_by(Message.sequence_number.desc())\
        .first()

    conversation.tail_sequence = tail.sequence_number if tail else -1
    conversation.tail_hash = tail.current_hash if tail else GENESIS_HASH
    conversation.last_message_id = tail.id if tail else None
    conversation.updated_at = tail.created_at if tail else conversation.created_at
    conversation.sos_id = latest_sos[0] if latest_sos else None

    for member in conversation.members:
        member.unread_count = db.query(func.count(Message.id))\
            .filter(
                Message.conversation_id == conversation_id,
                Message.receiver_id == member.participant_id,
                Message.is_read == False,
            )\
            .scalar()

    db.commit()
    logger.info("conversation_rebuilt", conversation_id=conversation_id, tail_sequence=conversation.tail_sequence)
    return conversation
