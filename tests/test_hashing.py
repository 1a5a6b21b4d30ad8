"""
Unit tests for canonical message hashing
"""
import json
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

from bloodchain.services.hashing import (
    GENESIS_HASH,
    canonical_payload,
    canonical_timestamp,
    message_hash,
    sha256_file_digest,
)


def make_message(**overrides):
    fields = dict(
        id="m-1",
        conversation_id="c-1",
        sequence_number=0,
        sender_id="bank-1",
        sender_name="Central Blood Bank",
        sender_type="bloodbank",
        receiver_id="hosp-1",
        receiver_name="City Hospital",
        message_type="text",
        content="Blood units available",
        sos_id="SOS-42",
        created_at=datetime(2024, 3, 1, 8, 30, 0, 125000),
        attachments=[],
        previous_hash=GENESIS_HASH,
    )
    fields.update(overrides)
    return SimpleNamespace(**fields)


class TestCanonicalPayload:
    """Test suite for the hashed representation of a message"""

    def test_genesis_hash(self):
        """The chain anchor is 64 zeros"""
        assert GENESIS_HASH == "0" * 64

    def test_payload_is_compact_sorted_json(self):
        """Test keys are sorted and there is no insignificant whitespace"""
        payload = canonical_payload(make_message()).decode("utf-8")

        decoded = json.loads(payload)
        assert list(decoded.keys()) == sorted(decoded.keys())
        assert ", " not in payload and ": " not in payload
        assert decoded["previousHash"] == GENESIS_HASH
        assert decoded["createdAt"] == "2024-03-01T08:30:00.125000"

    def test_non_ascii_content_kept_as_utf8(self):
        """Test text is hashed as UTF-8, not escaped"""
        payload = canonical_payload(make_message(content="Sangre O− disponible"))
        assert "O−".encode("utf-8") in payload

    def test_hash_is_deterministic(self):
        """Test identical fields produce identical hashes"""
        assert message_hash(make_message()) == message_hash(make_message())
        assert len(message_hash(make_message())) == 64

    def test_any_field_change_changes_hash(self):
        """Test content, metadata and the link all feed the hash"""
        base = message_hash(make_message())
        for change in (
            {"content": "Blood units unavailable"},
            {"sequence_number": 1},
            {"sender_name": "Someone Else"},
            {"receiver_id": "hosp-2"},
            {"sos_id": None},
            {"message_type": "blood_response"},
            {"created_at": datetime(2024, 3, 1, 8, 30, 0, 125001)},
            {"previous_hash": "f" * 64},
        ):
            assert message_hash(make_message(**change)) != base, change

    def test_attachments_feed_hash(self):
        """Test attachment content hashes are bound into the message hash"""
        attachment = SimpleNamespace(id="a-1", file_name="report.pdf", file_type="application/pdf", file_size=3, sha256="a" * 64)
        with_file = message_hash(make_message(attachments=[attachment]))
        swapped = SimpleNamespace(**{**vars(attachment), "sha256": "b" * 64})

        assert with_file != message_hash(make_message())
        assert with_file != message_hash(make_message(attachments=[swapped]))


class TestTimestamps:
    """Test suite for timestamp canonicalization"""

    def test_naive_timestamp_keeps_microseconds(self):
        assert canonical_timestamp(datetime(2024, 1, 1, 12, 0)) == "2024-01-01T12:00:00.000000"

    def test_aware_timestamp_converted_to_utc(self):
        """Test an offset timestamp hashes like its UTC equivalent"""
        aware = datetime(2024, 1, 1, 12, 0, tzinfo=timezone(timedelta(hours=2)))
        assert canonical_timestamp(aware) == "2024-01-01T10:00:00.000000"


def test_file_digest():
    assert sha256_file_digest(b"abc") == "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
