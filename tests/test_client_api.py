"""
Tests for the async REST client, run against the app in-process
"""
import httpx
import pytest

from bloodchain.client.api import CommunicationClient
from bloodchain.exceptions import AuthorizationError, ChainIntegrityError, NotFoundError, ValidationError


pytestmark = pytest.mark.anyio


@pytest.fixture
def http(app, orgs):
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver")


@pytest.fixture
def client_for(http, token_for):
    def build(org_id, **kwargs):
        return CommunicationClient("http://testserver", token_for(org_id), http=http, **kwargs)
    return build


class TestCommunicationClient:
    """Test suite for CommunicationClient against a live app"""

    async def test_exchange(self, http, client_for):
        bank, hospital = client_for("bank-1"), client_for("hosp-1")
        async with http:
            offer = await bank.send_message("hosp-1", "Blood units available", sos_id="SOS-42")
            reply = await hospital.send_message("bank-1", "Confirmed, dispatching now", sos_id="SOS-42")

            assert offer.sequence_number == 0
            assert reply.previous_hash == offer.current_hash

            [summary] = await hospital.get_conversations()
            assert summary.partner_id == "bank-1"
            assert summary.last_message.id == reply.id

            messages = await hospital.get_conversation_messages("bank-1")
            assert [m.id for m in messages] == [offer.id, reply.id]

            trail = await bank.get_sos_audit_trail("SOS-42", verify=True)
            assert [m.sequence_number for m in trail] == [0, 1]

            report = await bank.verify_chain_integrity(offer.conversation_id)
            assert report.is_valid is True
            assert report.message_count == 2

    async def test_read_receipts(self, http, client_for):
        bank, hospital = client_for("bank-1"), client_for("hosp-1")
        async with http:
            offer = await bank.send_message("hosp-1", "Blood units available")
            assert await hospital.get_unread_count() == 1

            marked = await hospital.mark_message_as_read(offer.id)
            assert marked.is_read is True
            assert await hospital.get_unread_count() == 0

    async def test_attachment_upload(self, http, client_for):
        hospital = client_for("hosp-1")
        async with http:
            message = await hospital.send_message(
                "bank-1", "Crossmatch report", message_type="document",
                attachments=[("crossmatch.pdf", b"%PDF-1.4 report", "application/pdf")],
            )
        assert message.attachments[0].file_name == "crossmatch.pdf"
        assert message.attachments[0].file_size == len(b"%PDF-1.4 report")


class TestClientErrors:
    """Test suite for mapping error responses back to exceptions"""

    async def test_not_found(self, http, client_for):
        async with http:
            with pytest.raises(NotFoundError):
                await client_for("hosp-1").send_message("nobody", "hello")

    async def test_validation(self, http, client_for):
        async with http:
            with pytest.raises(ValidationError):
                await client_for("hosp-1").send_message("bank-1", "hello", message_type="gossip")

    async def test_forbidden(self, http, client_for):
        bank = client_for("bank-1")
        async with http:
            offer = await bank.send_message("hosp-1", "Blood units available")
            with pytest.raises(AuthorizationError):
                await bank.mark_message_as_read(offer.id)

    async def test_unauthorized_hook(self, http):
        dropped = []
        client = CommunicationClient("http://testserver", lambda: None, http=http, on_unauthorized=lambda: dropped.append(True))
        async with http:
            with pytest.raises(AuthorizationError):
                await client.get_conversations()
        assert dropped == [True]

    async def test_broken_chain(self, http, client_for, raw_sql):
        bank, hospital = client_for("bank-1"), client_for("hosp-1")
        async with http:
            offer = await bank.send_message("hosp-1", "Blood units available", sos_id="SOS-42")
            await hospital.send_message("bank-1", "Confirmed", sos_id="SOS-42")
            raw_sql("UPDATE messages SET content = 'No units' WHERE id = :id", id=offer.id)

            with pytest.raises(ChainIntegrityError) as exc_info:
                await hospital.get_sos_audit_trail("SOS-42", verify=True)

        assert exc_info.value.broken_at == 1
        assert exc_info.value.conversation_id == offer.conversation_id
