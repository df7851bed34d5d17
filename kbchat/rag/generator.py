"""Answer generation from an assembled prompt."""
from typing import Dict, List, Optional
import structlog

from kbchat.config import ProviderSettings
from kbchat.errors import CompletionProviderError
from kbchat.llm_client import ProviderClient

logger = structlog.get_logger()


class AnswerGenerator:
    """Calls the completion provider. There is no local fallback."""

    def __init__(
        self,
        settings: ProviderSettings,
        client: Optional[ProviderClient] = None,
    ):
        self.settings = settings.validate()
        self.client = client or ProviderClient(settings)

    @property
    def model(self) -> str:
        return self.settings.chat_model

    async def generate(self, prompt: List[Dict[str, str]]) -> str:
        """Generate an answer for an ordered list of role/content messages.

        Raises:
            CompletionProviderError: If the provider fails or answers with nothing
        """
        answer = await self.client.chat(
            prompt, model=self.model, temperature=self.settings.temperature
        )

        answer = (answer or "").strip()
        if not answer:
            raise CompletionProviderError(
                "Empty answer from completion provider",
                provider_name=self.settings.provider,
            )

        logger.debug("answer_generated", model=self.model, answer_length=len(answer))
        return answer
