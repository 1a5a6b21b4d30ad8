"""Services package initialization"""
from bloodchain.services.chain_builder import MessageLedger, ConversationLocks
from bloodchain.services.chain_verifier import ChainVerifier, ChainReport
from bloodchain.services.attachments import AttachmentStore
from bloodchain.services.notifier import RealtimeNotifier

__all__ = ["MessageLedger", "ConversationLocks", "ChainVerifier", "ChainReport", "AttachmentStore", "RealtimeNotifier"]
