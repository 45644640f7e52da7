"""
Reply generation through an OpenAI-compatible chat-completion API.
"""

import logging
from typing import Any, Optional

from openai import AsyncOpenAI

from relay.config import Settings
from relay.errors import ConfigurationError, ProviderError

logger = logging.getLogger(__name__)


class ReplyGenerator:
    """
    Turns one user message into one assistant reply.

    The conversation sent to the provider is always the configured system
    prompt plus a single user turn.
    """

    def __init__(self, settings: Settings, client: Optional[Any] = None):
        self.settings = settings
        self._client = client
        if self._client is None and settings.OPENAI_API_KEY:
            # Retries are disabled: a failed call is logged and dropped
            self._client = AsyncOpenAI(
                api_key=settings.OPENAI_API_KEY,
                timeout=settings.HTTP_TIMEOUT_SECONDS,
                max_retries=0,
            )

    def build_messages(self, text: str) -> list:
        return [
            {"role": "system", "content": self.settings.SYSTEM_PROMPT},
            {"role": "user", "content": text},
        ]

    async def generate(self, text: str) -> str:
        """
        Generate a reply for the given user text.

        Args:
            text: Non-empty user message

        Returns:
            Stripped reply text, or the configured fallback reply when the
            provider returned no content

        Raises:
            ConfigurationError: OPENAI_API_KEY is not configured
            ProviderError: The completion call raised
        """
        if not self.settings.OPENAI_API_KEY or self._client is None:
            raise ConfigurationError("OPENAI_API_KEY is not configured")

        logger.debug(f"Requesting completion: model={self.settings.OPENAI_MODEL}, chars={len(text)}")

        try:
            completion = await self._client.chat.completions.create(
                model=self.settings.OPENAI_MODEL,
                messages=self.build_messages(text),
                temperature=self.settings.OPENAI_TEMPERATURE,
            )
        except Exception as e:
            raise ProviderError(f"Completion request failed: {e}") from e

        content = None
        if completion.choices:
            content = completion.choices[0].message.content

        reply = (content or "").strip()
        if not reply:
            logger.warning("Completion returned empty content, using fallback reply")
            return self.settings.FALLBACK_REPLY

        logger.info(f"Completion generated: {len(reply)} chars")
        return reply

    async def aclose(self) -> None:
        close = getattr(self._client, "close", None)
        if close is not None:
            await close()
