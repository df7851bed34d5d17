"""Conversation memory manager.

Handles conversation creation, status changes, message persistence and the
recent-history window used as chat context.
"""
import uuid
from pathlib import Path
from typing import List, Dict, Any, Optional, Tuple
import structlog

from kbchat import config, db

logger = structlog.get_logger()

CONVERSATION_STATUSES = ("active", "waiting_human", "closed")
SENDER_TYPES = ("customer", "ai_agent", "human_agent")


class ConversationManager:
    """Manages conversations and their message logs."""

    def __init__(self, db_path: Optional[Path] = None, context_window_size: int = None):
        """Initialize the conversation manager.

        Args:
            db_path: SQLite database file (defaults to config.DB_PATH)
            context_window_size: Number of recent messages to include in context
        """
        self.db_path = db_path or config.DB_PATH
        self.context_window_size = context_window_size or config.HISTORY_WINDOW
        db.init_database(self.db_path)

    def create_conversation(
        self,
        customer_id: Optional[str] = None,
        channel: Optional[str] = None,
        subject: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Create a new active conversation.

        Returns:
            The created conversation
        """
        conversation_id = str(uuid.uuid4())
        db.create_conversation(
            conversation_id,
            status="active",
            customer_id=customer_id,
            channel=channel,
            subject=subject,
            db_path=self.db_path,
        )
        logger.info("conversation_created", conversation_id=conversation_id)
        return self.get_conversation(conversation_id)

    def get_conversation(self, conversation_id: str) -> Optional[Dict[str, Any]]:
        """Get conversation details, or None if not found."""
        return db.get_conversation(conversation_id, self.db_path)

    def list_conversations(self, limit: int = 50) -> List[Dict[str, Any]]:
        """List conversations, most recently updated first."""
        return db.list_conversations(limit, self.db_path)

    def set_status(self, conversation_id: str, status: str) -> Optional[Dict[str, Any]]:
        """Change a conversation's status.

        Args:
            conversation_id: The conversation to update
            status: One of active, waiting_human, closed

        Returns:
            The updated conversation, or None if not found

        Raises:
            ValueError: If the status is unknown
        """
        if status not in CONVERSATION_STATUSES:
            raise ValueError(
                f"Invalid status '{status}'. Expected one of {', '.join(CONVERSATION_STATUSES)}"
            )
        if not db.update_conversation(conversation_id, status=status, db_path=self.db_path):
            return None
        logger.info("conversation_status_changed", conversation_id=conversation_id, status=status)
        return self.get_conversation(conversation_id)

    def touch(self, conversation_id: str) -> bool:
        """Refresh a conversation's updated_at timestamp."""
        return db.update_conversation(conversation_id, db_path=self.db_path)

    def add_message(self, conversation_id: str, sender_type: str, content: str) -> int:
        """Append a message to a conversation.

        Args:
            conversation_id: The conversation to add the message to
            sender_type: customer, ai_agent or human_agent (hyphens accepted)
            content: The message content

        Returns:
            ID of the inserted message
        """
        sender_type = sender_type.replace("-", "_")
        if sender_type not in SENDER_TYPES:
            raise ValueError(f"Invalid sender type '{sender_type}'")

        message_id = db.add_message(conversation_id, sender_type, content, self.db_path)
        logger.info(
            "conversation_message_added",
            conversation_id=conversation_id,
            sender_type=sender_type,
            message_id=message_id,
        )
        return message_id

    def add_turn(self, conversation_id: str, question: str, answer: str) -> Tuple[int, int]:
        """Append a customer question and its AI answer atomically.

        Returns:
            IDs of the question and answer messages

        Raises:
            StorageError: If either message cannot be stored (nothing is kept)
        """
        question_id, answer_id = db.add_turn(conversation_id, question, answer, self.db_path)
        logger.info(
            "conversation_turn_added",
            conversation_id=conversation_id,
            question_id=question_id,
            answer_id=answer_id,
        )
        return question_id, answer_id

    def get_recent_messages(
        self, conversation_id: str, limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """Get recent messages in chronological order.

        Args:
            conversation_id: The conversation to get messages for
            limit: Maximum number of messages (defaults to context_window_size)
        """
        limit = limit or self.context_window_size
        return db.get_recent_messages(conversation_id, limit, self.db_path)

    def get_messages(self, conversation_id: str) -> List[Dict[str, Any]]:
        """Get all messages of a conversation in chronological order."""
        return db.get_messages(conversation_id, self.db_path)

    def format_history(self, conversation_id: str) -> List[Dict[str, str]]:
        """Recent history as sender_type/content pairs for prompt assembly."""
        return [
            {"sender_type": msg["sender_type"], "content": msg["content"]}
            for msg in self.get_recent_messages(conversation_id)
        ]
