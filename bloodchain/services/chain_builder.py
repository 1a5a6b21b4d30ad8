"""
Chain Builder
Appends messages to a conversation's hash-chained ledger
"""
import threading
import time
import uuid
from datetime import datetime
from typing import Dict, List, Optional, Tuple

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from bloodchain.config import Settings
from bloodchain.exceptions import ValidationError, NotFoundError, ConflictError
from bloodchain.models import Organization, Conversation, ConversationMember, Message, MessageAttachment
from bloodchain.models.conversation import conversation_id_for
from bloodchain.models.message import MESSAGE_TYPES
from bloodchain.services import conversation_index
from bloodchain.services.attachments import AttachmentStore, IncomingAttachment
from bloodchain.services.hashing import GENESIS_HASH, message_hash

logger = structlog.get_logger()


class ConversationLocks:
    """
    One lock per conversation id, shared by everything in the process

    Appends to the same conversation take turns; appends to different
    conversations never wait on each other.
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def for_conversation(self, conversation_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(conversation_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[conversation_id] = lock
            return lock


class _TailMoved(Exception):
    """Another writer advanced the tail between read and commit"""


class MessageLedger:
    """
    Append-only message store

    Every append reads the conversation tail, links the new message to it
    and commits through a compare-and-swap on the tail pointer. Losing the
    swap rolls the whole append back and retries against the new tail,
    up to `append_max_attempts` times in total.
    """

    def __init__(self, db: Session, settings: Settings, locks: ConversationLocks, store: AttachmentStore):
        self.db = db
        self.settings = settings
        self.locks = locks
        self.store = store

    def append(
        self,
        sender: Organization,
        receiver_id: str,
        message_type: str,
        content: str,
        attachments: Optional[List[IncomingAttachment]] = None,
        sos_id: Optional[str] = None,
    ) -> Message:
        """
        Append a message from `sender` to `receiver_id`

        Raises:
            ValidationError: request breaks the append preconditions
            NotFoundError: receiver is unknown
            ConflictError: lost the tail race on every attempt
        """
        attachments = attachments or []
        content = content or ""
        sos_id = sos_id or None

        self._validate(sender, receiver_id, message_type, content, attachments)

        receiver = self.db.query(Organization).filter(Organization.id == receiver_id).first()
        if not receiver:
            raise NotFoundError(f"Receiver not found: {receiver_id}")

        stored = [self.store.put(a) for a in attachments]
        conversation_id = conversation_id_for(sender.id, receiver.id)

        lock = self.locks.for_conversation(conversation_id)
        with lock, structlog.contextvars.bound_contextvars(conversation_id=conversation_id):
            self._ensure_conversation(conversation_id, sender.id, receiver.id)

            max_attempts = max(1, self.settings.append_max_attempts)
            for attempt in range(1, max_attempts + 1):
                try:
                    message = self._try_append(conversation_id, sender, receiver, message_type, content, stored, sos_id)
                except (_TailMoved, IntegrityError):
                    self.db.rollback()
                    logger.warning("append_conflict", attempt=attempt)
                    if attempt == max_attempts:
                        raise ConflictError("Conversation was modified concurrently; retry the request")
                    time.sleep(self.settings.append_retry_backoff * attempt)
                    continue

                logger.info(
                    "message_appended",
                    message_id=message.id,
                    sequence_number=message.sequence_number,
                    sos_id=sos_id,
                )
                return message

    def _validate(self, sender, receiver_id, message_type, content, attachments) -> None:
        if not receiver_id:
            raise ValidationError("receiverId is required")
        if sender.id == receiver_id:
            raise ValidationError("Cannot send a message to yourself")
        if message_type not in MESSAGE_TYPES:
            raise ValidationError(f"Unknown messageType: {message_type}")
        if not content.strip() and not attachments:
            raise ValidationError("Message needs content or at least one attachment")
        self.store.validate(attachments)

    def _ensure_conversation(self, conversation_id: str, first_id: str, second_id: str) -> None:
        """Create the empty conversation head if this is the first message"""
        exists = self.db.query(Conversation.id).filter(Conversation.id == conversation_id).first()
        if exists:
            return

        low, high = sorted((first_id, second_id))
        self.db.add(Conversation(
            id=conversation_id,
            participant_low=low,
            participant_high=high,
            tail_sequence=-1,
            tail_hash=GENESIS_HASH,
        ))
        self.db.add(ConversationMember(conversation_id=conversation_id, participant_id=low, partner_id=high))
        self.db.add(ConversationMember(conversation_id=conversation_id, participant_id=high, partner_id=low))
        try:
            self.db.commit()
        except IntegrityError:
            # Created by another process in the meantime
            self.db.rollback()

    def _read_tail(self, conversation_id: str) -> Tuple[int, str, Optional[datetime]]:
        """Current tail sequence, tail hash and the tail message's timestamp"""
        conversation = self.db.query(Conversation)\
            .filter(Conversation.id == conversation_id)\
            .populate_existing()\
            .one()

        tail_created_at = None
        if conversation.tail_sequence >= 0:
            tail = self.db.query(Message)\
                .filter(Message.conversation_id == conversation_id, Message.sequence_number == conversation.tail_sequence)\
                .first()
            if tail:
                tail_created_at = tail.created_at
        return conversation.tail_sequence, conversation.tail_hash, tail_created_at

    def _try_append(self, conversation_id, sender, receiver, message_type, content, stored, sos_id) -> Message:
        expected_sequence, expected_hash, tail_created_at = self._read_tail(conversation_id)
        sequence = expected_sequence + 1

        created_at = datetime.utcnow()
        if tail_created_at and tail_created_at > created_at:
            created_at = tail_created_at

        message = Message(
            id=str(uuid.uuid4()),
            conversation_id=conversation_id,
            sender_id=sender.id,
            sender_name=sender.name,
            sender_type=sender.org_type,
            receiver_id=receiver.id,
            receiver_name=receiver.name,
            message_type=message_type,
            content=content,
            sos_id=sos_id,
            is_read=False,
            sequence_number=sequence,
            previous_hash=expected_hash,
            created_at=created_at,
            attachments=[
                MessageAttachment(
                    id=str(uuid.uuid4()),
                    position=position,
                    file_name=item.file_name,
                    file_type=item.file_type,
                    file_size=item.file_size,
                    sha256=item.sha256,
                    url=item.url,
                )
                for position, item in enumerate(stored)
            ],
        )
        message.current_hash = message_hash(message)

        # Compare-and-swap on the tail pointer
        swapped = self.db.query(Conversation)\
            .filter(
                Conversation.id == conversation_id,
                Conversation.tail_sequence == expected_sequence,
                Conversation.tail_hash == expected_hash,
            )\
            .update(
                {
                    Conversation.tail_sequence: sequence,
                    Conversation.tail_hash: message.current_hash,
                },
                synchronize_session=False,
            )
        if swapped != 1:
            raise _TailMoved()

        self.db.add(message)
        self.db.flush()

        conversation_index.on_append(self.db, message)
        self.db.commit()
        self.db.refresh(message)
        return message
