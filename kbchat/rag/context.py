"""Prompt assembly from retrieved chunks and conversation history."""
from typing import Dict, List, Sequence
import structlog

from kbchat import config
from kbchat.rag.knowledge_store import SearchHit

logger = structlog.get_logger()

NO_CONTEXT_TEXT = "No context found."

SYSTEM_TEMPLATE = """You are the technical assistant of {assistant_name}. Answer using only the context below.
If the context does not contain the answer, say that you could not find that information and offer to forward the question to a human agent.

CONTEXT:
{context}"""

# Message-log sender types and plain chat roles, mapped to completion roles
ROLE_MAP = {
    "customer": "user",
    "user": "user",
    "ai_agent": "assistant",
    "human_agent": "assistant",
    "assistant": "assistant",
}


def to_chat_role(sender: str) -> str:
    """Map a sender type or role to 'user' or 'assistant'.

    Hyphenated sender types (ai-agent, human-agent) are accepted as well.
    """
    try:
        return ROLE_MAP[sender.replace("-", "_")]
    except KeyError:
        raise ValueError(f"Unknown message role: {sender}") from None


class ContextAssembler:
    """Merges retrieved chunks and recent history into a bounded prompt."""

    def __init__(
        self,
        history_window: int = None,
        max_context_chars: int = None,
        assistant_name: str = None,
    ):
        """Initialize the assembler.

        Args:
            history_window: Number of most recent history messages kept
            max_context_chars: Maximum characters of chunk text in the prompt
            assistant_name: Name the assistant speaks for
        """
        self.history_window = history_window or config.HISTORY_WINDOW
        self.max_context_chars = max_context_chars or config.MAX_CONTEXT_CHARS
        self.assistant_name = assistant_name or config.ASSISTANT_NAME

    def format_context(self, hits: Sequence[SearchHit]) -> str:
        """Format chunk contents, each tagged with its document title."""
        if not hits:
            return NO_CONTEXT_TEXT

        parts = []
        total_chars = 0

        for hit in hits:
            chunk_text = f"[SOURCE: {hit.title}]\n{hit.content.strip()}"

            if total_chars + len(chunk_text) > self.max_context_chars:
                # Try to fit a truncated version
                remaining = self.max_context_chars - total_chars
                if remaining > 200:
                    parts.append(chunk_text[:remaining] + "...")
                break

            parts.append(chunk_text)
            total_chars += len(chunk_text) + 2

        return "\n\n".join(parts)

    def assemble(
        self,
        hits: Sequence[SearchHit],
        history: Sequence[Dict[str, str]],
        question: str,
    ) -> List[Dict[str, str]]:
        """Build the completion prompt.

        Args:
            hits: Retrieved chunks (may be empty)
            history: Chronological messages with 'role' or 'sender_type' and 'content'
            question: The new user question

        Returns:
            Ordered role/content messages: system, recent history, question
        """
        system_content = SYSTEM_TEMPLATE.format(
            assistant_name=self.assistant_name,
            context=self.format_context(hits),
        )

        messages = [{"role": "system", "content": system_content}]

        recent = list(history)[-self.history_window:] if self.history_window else []
        for message in recent:
            sender = message.get("role") or message.get("sender_type")
            messages.append({"role": to_chat_role(sender), "content": message["content"]})

        messages.append({"role": "user", "content": question})

        logger.debug(
            "prompt_assembled",
            chunks=len(hits),
            history_messages=len(recent),
            system_length=len(system_content),
        )
        return messages
