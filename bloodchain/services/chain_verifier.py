"""
Chain Verification Engine
Audits a conversation's hash chain for altered, inserted or removed messages
"""
from dataclasses import dataclass, asdict
from typing import List, Optional, Tuple

import structlog
from sqlalchemy import func
from sqlalchemy.orm import Session

from bloodchain.exceptions import ChainIntegrityError, NotFoundError
from bloodchain.models import Conversation, Message, IntegrityIncident
from bloodchain.services.hashing import GENESIS_HASH, message_hash

logger = structlog.get_logger()


@dataclass
class ChainReport:
    """Outcome of verifying one conversation"""
    conversation_id: str
    is_valid: bool
    message_count: int
    broken_at: Optional[int] = None
    reason: Optional[str] = None

    def raise_for_broken(self) -> None:
        if not self.is_valid:
            raise ChainIntegrityError(
                f"Conversation {self.conversation_id} chain broken at sequence {self.broken_at} ({self.reason})",
                conversation_id=self.conversation_id,
                broken_at=self.broken_at,
            )

    def to_dict(self) -> dict:
        return asdict(self)


class ChainVerifier:
    """
    Walks a conversation's messages in sequence order

    Checks, first failure wins:
    1. Genesis: the first message is sequence 0 and links to GENESIS_HASH
    2. Sequence: each message is exactly previous + 1 (no gap, no duplicate)
    3. Link: for message n > 0, the predecessor's hash recomputed from its
       stored fields equals both message n's previous_hash and the
       predecessor's stored current_hash; a mismatch is reported at n
    4. Tail: the last message's stored current_hash matches its fields
    5. Head: the ledger reaches the tail the conversation head points at

    Tampering with message k is therefore reported at k + 1 when k has a
    successor, and at k when k is the tail.

    Verification reads a snapshot bounded by the tail sequence observed at
    start, so concurrent appends never produce a false report.
    """

    def __init__(self, db: Session):
        self.db = db

    def verify(self, conversation_id: str, detected_by: Optional[str] = None) -> ChainReport:
        """Verify one conversation; records an incident when it is broken"""
        with structlog.contextvars.bound_contextvars(conversation_id=conversation_id):
            head = self._snapshot_head(conversation_id)
            upper = head[0]

            messages = self.db.query(Message)\
                .filter(Message.conversation_id == conversation_id, Message.sequence_number <= upper)\
                .order_by(Message.sequence_number, Message.created_at)\
                .populate_existing()\
                .all()

            report = self.walk(conversation_id, messages, expected_tail=head)
            if not report.is_valid:
                self._record_incident(report, detected_by)
            return report

    def walk(
        self,
        conversation_id: str,
        messages: List[Message],
        expected_tail: Optional[Tuple[int, Optional[str]]] = None,
    ) -> ChainReport:
        """
        Check an already-ordered list of messages

        `expected_tail` is the (sequence, hash) the conversation head points
        at; when given, a ledger that stops short of it or ends on another
        hash is reported as truncated.
        """
        count = len(messages)

        def broken(at: int, reason: str) -> ChainReport:
            return ChainReport(conversation_id, False, count, broken_at=at, reason=reason)

        if not messages:
            if expected_tail is not None and expected_tail[0] >= 0:
                return broken(0, "missing_messages")
            return ChainReport(conversation_id, True, 0)

        first = messages[0]
        if first.sequence_number != 0 or first.previous_hash != GENESIS_HASH:
            return broken(first.sequence_number, "genesis_mismatch")

        for i in range(1, count):
            prev_msg = messages[i - 1]
            curr_msg = messages[i]

            if curr_msg.sequence_number == prev_msg.sequence_number:
                return broken(curr_msg.sequence_number, "sequence_duplicate")
            if curr_msg.sequence_number != prev_msg.sequence_number + 1:
                return broken(curr_msg.sequence_number, "sequence_gap")

            expected = message_hash(prev_msg)
            if curr_msg.previous_hash != expected:
                return broken(curr_msg.sequence_number, "link_mismatch")
            if prev_msg.current_hash != expected:
                return broken(curr_msg.sequence_number, "hash_mismatch")

        tail = messages[-1]
        if tail.current_hash != message_hash(tail):
            return broken(tail.sequence_number, "hash_mismatch")

        if expected_tail is not None:
            tail_sequence, tail_hash = expected_tail
            if tail.sequence_number < tail_sequence:
                return broken(tail.sequence_number + 1, "missing_messages")
            if tail_hash is not None and tail.current_hash != tail_hash:
                return broken(tail.sequence_number, "head_mismatch")

        return ChainReport(conversation_id, True, count)

    def _snapshot_head(self, conversation_id: str) -> Tuple[int, Optional[str]]:
        """(tail sequence, tail hash) bounding this verification"""
        head = self.db.query(Conversation.tail_sequence, Conversation.tail_hash)\
            .filter(Conversation.id == conversation_id)\
            .first()
        if head is not None:
            return head[0], head[1]

        # Head row missing; fall back to what the ledger holds
        highest = self.db.query(func.max(Message.sequence_number))\
            .filter(Message.conversation_id == conversation_id)\
            .scalar()
        if highest is None:
            raise NotFoundError(f"Conversation not found: {conversation_id}")
        return highest, None

    def _record_incident(self, report: ChainReport, detected_by: Optional[str]) -> None:
        logger.error(
            "chain_integrity_violation",
            broken_at=report.broken_at,
            reason=report.reason,
            message_count=report.message_count,
        )
        # One incident per break; repeated audits of the same break add nothing
        already_recorded = self.db.query(IntegrityIncident.id)\
            .filter(
                IntegrityIncident.conversation_id == report.conversation_id,
                IntegrityIncident.broken_at == report.broken_at,
                IntegrityIncident.reason == report.reason,
            )\
            .first()
        if already_recorded:
            return

        self.db.add(IntegrityIncident(
            conversation_id=report.conversation_id,
            broken_at=report.broken_at,
            reason=report.reason,
            message_count=report.message_count,
            detected_by=detected_by,
        ))
        self.db.commit()
