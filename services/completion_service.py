"""
Completion Service - outbound chat-completion calls (OpenRouter via the OpenAI client)
"""
import logging
from typing import Dict, List, Optional

import openai
from openai import AsyncOpenAI

from config.settings import settings
from services.errors import CompletionServiceError

logger = logging.getLogger(__name__)


class CompletionService:
    """Thin wrapper that turns a role-tagged message list into reply text."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        timeout: Optional[float] = None,
    ):
        self.api_key = api_key or settings.completion_api_key
        self.base_url = base_url or settings.completion_base_url
        self.model = model or settings.completion_model
        self.temperature = settings.completion_temperature if temperature is None else temperature
        self.max_tokens = max_tokens or settings.completion_max_tokens
        self.timeout = timeout or settings.completion_timeout_seconds
        self._client: Optional[AsyncOpenAI] = None

    @property
    def client(self) -> AsyncOpenAI:
        if self._client is None:
            # Retries are left to the caller; a timeout counts as a failed completion
            self._client = AsyncOpenAI(
                api_key=self.api_key,
                base_url=self.base_url,
                timeout=self.timeout,
                max_retries=0,
            )
        return self._client

    async def complete(self, messages: List[Dict[str, str]]) -> str:
        """
        Request a completion.

        Args:
            messages: Ordered role-tagged turns

        Returns:
            The reply text, possibly empty if the provider returned no content

        Raises:
            CompletionServiceError: If the API is not configured, errors or times out
        """
        if not self.api_key:
            logger.error("Completion API key is not set (OPENROUTER_API_KEY / OPENAI_API_KEY)")
            raise CompletionServiceError("Completion API is not configured")

        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except openai.APITimeoutError as e:
            logger.error(f"Completion request timed out after {self.timeout}s: {e}")
            raise CompletionServiceError("Completion request timed out") from e
        except openai.OpenAIError as e:
            logger.error(f"Completion request failed: {e}", exc_info=True)
            raise CompletionServiceError("Completion request failed") from e

        if not response.choices:
            return ""
        return response.choices[0].message.content or ""


_completion_service: Optional[CompletionService] = None


def get_completion_service() -> CompletionService:
    """FastAPI dependency; one shared client per process."""
    global _completion_service
    if _completion_service is None:
        _completion_service = CompletionService()
    return _completion_service
