"""
Canonical message hashing for the conversation ledger

Each message hash binds its content, metadata and the previous message's
hash:

    current_hash = SHA-256(canonical_json(fields + previous_hash))

The canonical form is JSON with sorted keys, no insignificant whitespace
and UTF-8 text, so the same fields always produce the same bytes.
"""
import hashlib
import json
from datetime import datetime
from typing import Dict, List, Sequence


# previous_hash of the first message in every conversation
GENESIS_HASH = "0" * 64


def canonical_timestamp(value: datetime) -> str:
    """ISO-8601 with microseconds, naive UTC"""
    if value.tzinfo is not None:
        value = value.replace(tzinfo=None) - value.utcoffset()
    return value.isoformat(timespec="microseconds")


def attachment_fingerprints(attachments: Sequence) -> List[Dict]:
    """Ordered identifiers and content hashes of a message's attachments"""
    return [
        {
            "id": a.id,
            "fileName": a.file_name,
            "fileType": a.file_type,
            "fileSize": int(a.file_size),
            "sha256": a.sha256,
        }
        for a in attachments
    ]


def canonical_payload(message) -> bytes:
    """Serialize the hashed fields of a message in an order-stable way"""
    payload = {
        "id": message.id,
        "conversationId": message.conversation_id,
        "sequenceNumber": message.sequence_number,
        "senderId": message.sender_id,
        "senderName": message.sender_name,
        "senderType": message.sender_type,
        "receiverId": message.receiver_id,
        "receiverName": message.receiver_name,
        "messageType": message.message_type,
        "content": message.content or "",
        "sosId": message.sos_id,
        "createdAt": canonical_timestamp(message.created_at),
        "attachments": attachment_fingerprints(message.attachments),
        "previousHash": message.previous_hash,
    }
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def message_hash(message) -> str:
    """SHA-256 of a message's canonical payload, from its own stored fields"""
    return hashlib.sha256(canonical_payload(message)).hexdigest()


def sha256_file_digest(data: bytes) -> str:
    """Content address for attachment bytes"""
    return hashlib.sha256(data).hexdigest()
