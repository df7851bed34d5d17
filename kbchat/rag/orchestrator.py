"""Chat turn orchestration.

One turn moves through RECEIVED -> EMBEDDING_QUERY -> RETRIEVING ->
ASSEMBLING -> GENERATING -> PERSISTING -> DONE, or to FAILED from any step.
Nothing is persisted for a failed turn.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence
import structlog

from kbchat.errors import KBChatError, StorageError
from kbchat.memory import ConversationManager
from kbchat.rag.context import ContextAssembler
from kbchat.rag.generator import AnswerGenerator
from kbchat.rag.retriever import Retriever

logger = structlog.get_logger()


class TurnState(str, Enum):
    RECEIVED = "received"
    EMBEDDING_QUERY = "embedding_query"
    RETRIEVING = "retrieving"
    ASSEMBLING = "assembling"
    GENERATING = "generating"
    PERSISTING = "persisting"
    DONE = "done"
    FAILED = "failed"


@dataclass
class TurnResult:
    """Answer (or error) for one chat turn."""

    state: TurnState
    answer: Optional[str] = None
    chunks_used: int = 0
    has_context: bool = False
    conversation_id: Optional[str] = None
    error: Optional[str] = None
    failed_at: Optional[TurnState] = None
    exception: Optional[KBChatError] = field(default=None, repr=False)

    @property
    def ok(self) -> bool:
        return self.state is TurnState.DONE

    def to_dict(self) -> Dict[str, Any]:
        if not self.ok:
            return {"error": self.error}
        return {
            "answer": self.answer,
            "chunksUsed": self.chunks_used,
            "hasContext": self.has_context,
        }


class ChatOrchestrator:
    """Runs retrieval, prompt assembly, generation and persistence for a turn."""

    def __init__(
        self,
        retriever: Retriever,
        assembler: ContextAssembler,
        generator: AnswerGenerator,
        conversations: Optional[ConversationManager] = None,
    ):
        self.retriever = retriever
        self.assembler = assembler
        self.generator = generator
        self.conversations = conversations

    async def handle_turn(
        self,
        question: str,
        conversation_id: Optional[str] = None,
        history: Optional[Sequence[Dict[str, str]]] = None,
    ) -> TurnResult:
        """Answer one question.

        With a conversation_id, history is read from the conversation's
        message log and both messages are appended on success. Without one,
        the caller's history is used and nothing is stored.

        Args:
            question: The user's question
            conversation_id: Conversation the turn belongs to
            history: Recent role/content messages (ignored with a conversation_id)

        Returns:
            TurnResult in state DONE, or FAILED with an error message

        Raises:
            ValueError: If the question is empty
        """
        question = (question or "").strip()
        if not question:
            raise ValueError("Question is required")

        state = TurnState.RECEIVED
        log = logger.bind(conversation_id=conversation_id)
        log.info("chat_turn_received", question_length=len(question))

        def advance(next_state: TurnState) -> None:
            nonlocal state
            log.debug("chat_turn_transition", from_state=state.value, to_state=next_state.value)
            state = next_state

        try:
            turn_history = self._load_history(conversation_id, history)

            advance(TurnState.EMBEDDING_QUERY)
            query_vector = await self.retriever.embed_query(question)

            advance(TurnState.RETRIEVING)
            hits = self.retriever.search(query_vector)

            advance(TurnState.ASSEMBLING)
            prompt = self.assembler.assemble(hits, turn_history, question)

            advance(TurnState.GENERATING)
            answer = await self.generator.generate(prompt)

            advance(TurnState.PERSISTING)
            if conversation_id:
                self.conversations.add_turn(conversation_id, question, answer)

        except KBChatError as e:
            log.error(
                "chat_turn_failed",
                state=state.value,
                error=str(e),
                error_type=type(e).__name__,
                retryable=e.retryable,
            )
            return TurnResult(
                state=TurnState.FAILED,
                conversation_id=conversation_id,
                error=str(e),
                failed_at=state,
                exception=e,
            )
        except Exception as e:
            log.error(
                "chat_turn_failed",
                state=state.value,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise

        log.info(
            "chat_turn_done",
            chunks_used=len(hits),
            has_context=bool(hits),
            answer_length=len(answer),
        )

        return TurnResult(
            state=TurnState.DONE,
            answer=answer,
            chunks_used=len(hits),
            has_context=bool(hits),
            conversation_id=conversation_id,
        )

    def _load_history(
        self,
        conversation_id: Optional[str],
        history: Optional[Sequence[Dict[str, str]]],
    ) -> List[Dict[str, str]]:
        if not conversation_id:
            return list(history or [])

        if self.conversations is None:
            raise StorageError("Conversation storage is not configured")
        if self.conversations.get_conversation(conversation_id) is None:
            raise StorageError(f"Conversation not found: {conversation_id}")

        return self.conversations.format_history(conversation_id)
