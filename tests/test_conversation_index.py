"""
Unit tests for conversation summaries, read receipts and SOS audit trails
"""
import pytest

from bloodchain.exceptions import AuthorizationError, NotFoundError
from bloodchain.models import Conversation, ConversationMember
from bloodchain.services import conversation_index


@pytest.fixture
def exchange(ledger, orgs):
    """Blood bank offers units to two hospitals; one replies"""
    offer = ledger.append(orgs["bloodbank"], "hosp-1", "blood_response", "Blood units available", sos_id="SOS-42")
    reply = ledger.append(orgs["hospital"], "bank-1", "text", "Confirmed, dispatching now", sos_id="SOS-42")
    other = ledger.append(orgs["bloodbank"], "hosp-2", "text", "Stock update", sos_id="SOS-43")
    return offer, reply, other


class TestListConversations:
    """Test suite for per-participant conversation lists"""

    def test_bloodbank_sees_both_conversations(self, db, exchange):
        summaries = conversation_index.list_conversations(db, "bank-1")

        assert [s.partner_id for s in summaries] == ["hosp-2", "hosp-1"]
        assert summaries[0].partner_name == "County Hospital"
        assert summaries[0].partner_type == "hospital"

    def test_summary_carries_last_message_and_unread(self, db, exchange):
        offer, reply, _ = exchange
        summaries = {s.partner_id: s for s in conversation_index.list_conversations(db, "hosp-1")}

        summary = summaries["bank-1"]
        assert summary.last_message.id == reply.id
        assert summary.unread_count == 1
        assert summary.sos_id == "SOS-42"
        assert summary.conversation_id == offer.conversation_id

    def test_no_conversations(self, db, orgs):
        assert conversation_index.list_conversations(db, "admin-1") == []


class TestConversationMessages:
    """Test suite for reading a two-party channel"""

    def test_messages_in_sequence_order(self, db, exchange):
        offer, reply, _ = exchange
        messages = conversation_index.conversation_messages(db, "hosp-1", "bank-1")
        assert [m.id for m in messages] == [offer.id, reply.id]

    def test_same_channel_from_either_side(self, db, exchange):
        from_hospital = conversation_index.conversation_messages(db, "hosp-1", "bank-1")
        from_bank = conversation_index.conversation_messages(db, "bank-1", "hosp-1")
        assert [m.id for m in from_hospital] == [m.id for m in from_bank]

    def test_unknown_partner(self, db, orgs):
        with pytest.raises(NotFoundError):
            conversation_index.conversation_messages(db, "hosp-1", "nobody")

    def test_no_history(self, db, orgs):
        assert conversation_index.conversation_messages(db, "hosp-1", "hosp-2") == []


class TestSosAuditTrail:
    """Test suite for SOS audit trails"""

    def test_participant_sees_own_messages(self, db, orgs, exchange):
        offer, reply, _ = exchange
        trail = conversation_index.sos_audit_trail(db, "SOS-42", orgs["hospital"])
        assert [m.id for m in trail] == [offer.id, reply.id]

    def test_outsider_sees_nothing(self, db, orgs, exchange):
        assert conversation_index.sos_audit_trail(db, "SOS-42", orgs["other"]) == []

    def test_admin_sees_everything(self, db, orgs, exchange):
        trail = conversation_index.sos_audit_trail(db, "SOS-42", orgs["admin"])
        assert len(trail) == 2

    def test_unknown_sos(self, db, orgs, exchange):
        assert conversation_index.sos_audit_trail(db, "SOS-404", orgs["admin"]) == []


class TestMarkRead:
    """Test suite for read receipts"""

    def test_receiver_marks_read(self, db, exchange):
        offer, _, _ = exchange
        message, changed = conversation_index.mark_read(db, offer.id, "hosp-1")

        assert changed is True
        assert message.is_read is True
        assert message.read_at is not None
        assert conversation_index.unread_count(db, "hosp-1") == 0

    def test_repeat_is_noop(self, db, exchange):
        offer, _, _ = exchange
        first, _ = conversation_index.mark_read(db, offer.id, "hosp-1")
        again, changed = conversation_index.mark_read(db, offer.id, "hosp-1")

        assert changed is False
        assert again.read_at == first.read_at
        assert conversation_index.unread_count(db, "hosp-1") == 0

    def test_sender_cannot_mark_read(self, db, exchange):
        offer, _, _ = exchange
        with pytest.raises(AuthorizationError):
            conversation_index.mark_read(db, offer.id, "bank-1")

    def test_unknown_message(self, db, orgs):
        with pytest.raises(NotFoundError):
            conversation_index.mark_read(db, "missing", "hosp-1")

    def test_read_receipt_keeps_chain_valid(self, db, exchange):
        """Test read receipts are outside the hashed fields"""
        from bloodchain.services.chain_verifier import ChainVerifier

        offer, _, _ = exchange
        conversation_index.mark_read(db, offer.id, "hosp-1")
        assert ChainVerifier(db).verify(offer.conversation_id).is_valid


class TestUnreadCount:
    """Test suite for unread totals"""

    def test_counts_across_conversations(self, db, exchange):
        assert conversation_index.unread_count(db, "hosp-1") == 1
        assert conversation_index.unread_count(db, "hosp-2") == 1
        assert conversation_index.unread_count(db, "bank-1") == 1

    def test_unknown_participant(self, db, orgs):
        assert conversation_index.unread_count(db, "nobody") == 0


class TestRebuild:
    """Test suite for recomputing derived conversation state"""

    def test_rebuild_restores_counters(self, db, exchange, raw_sql):
        offer, reply, _ = exchange
        raw_sql("UPDATE conversation_members SET unread_count = 7")
        raw_sql("UPDATE conversations SET last_message_id = NULL, sos_id = NULL")
        db.expire_all()

        conversation = conversation_index.rebuild(db, offer.conversation_id)

        assert conversation.last_message_id == reply.id
        assert conversation.tail_sequence == 1
        assert conversation.tail_hash == reply.current_hash
        assert conversation.sos_id == "SOS-42"
        counters = {
            m.participant_id: m.unread_count
            for m in db.query(ConversationMember).filter(ConversationMember.conversation_id == offer.conversation_id)
        }
        assert counters == {"hosp-1": 1, "bank-1": 1}

    def test_rebuild_unknown_conversation(self, db, orgs):
        with pytest.raises(NotFoundError):
            conversation_index.rebuild(db, "missing")

    def test_rebuilt_head_matches_appended_head(self, db, exchange):
        offer, _, _ = exchange
        before = db.query(Conversation).filter(Conversation.id == offer.conversation_id).populate_existing().one()
        snapshot = (before.tail_sequence, before.tail_hash, before.last_message_id)

        after = conversation_index.rebuild(db, offer.conversation_id)
        assert (after.tail_sequence, after.tail_hash, after.last_message_id) == snapshot
