"""
Client package - REST and realtime access to the communication ledger
"""
from bloodchain.client.api import CommunicationClient
from bloodchain.client.realtime import RealtimeClient
from bloodchain.client.sync import ConversationFeed

__all__ = ["CommunicationClient", "RealtimeClient", "ConversationFeed"]
