"""Conversation memory: conversations and their message logs."""
from kbchat.memory.manager import ConversationManager, CONVERSATION_STATUSES, SENDER_TYPES

__all__ = ["ConversationManager", "CONVERSATION_STATUSES", "SENDER_TYPES"]
