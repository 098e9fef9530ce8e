"""
OpenAI completion client for Mail Sweep.

Wraps a single chat-completion call behind `complete(prompt, max_tokens,
temperature)` and classifies failures so callers can tell a missing API
key apart from a rejected request or a network problem.
"""

import logging
import re
from typing import Optional

from openai import APIConnectionError, APIStatusError, AsyncOpenAI

from config import settings

logger = logging.getLogger(__name__)


_CODE_FENCE = re.compile(r"```(?:json)?\s*")


class AIError(Exception):
    """Base exception for AI completion failures."""
    pass


class AIUnconfiguredError(AIError):
    """Raised when no OpenAI API key is configured."""
    pass


class AIAPIError(AIError):
    """Raised when OpenAI answered with a non-success status."""

    def __init__(self, message: str, status: Optional[int] = None, body=None):
        super().__init__(message)
        self.status = status
        self.body = body


class AITransportError(AIError):
    """Raised when OpenAI could not be reached."""
    pass


def strip_code_fences(text: str) -> str:
    """Remove markdown code fences models like to wrap JSON answers in."""
    return _CODE_FENCE.sub("", text or "").strip()


class AIClient:
    """
    Chat-completion client.

    The underlying AsyncOpenAI client is created lazily so a missing key
    only matters when a completion is actually requested.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        client: Optional[AsyncOpenAI] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.OPENAI_API_KEY
        self.model = model or settings.OPENAI_MODEL
        self._client = client

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            if not self.api_key:
                raise AIUnconfiguredError("OPENAI_API_KEY not configured")
            self._client = AsyncOpenAI(
                api_key=self.api_key,
                max_retries=settings.OPENAI_MAX_RETRIES,
            )
        return self._client

    async def complete(self, prompt: str, max_tokens: int = 150, temperature: float = 0.7) -> str:
        """
        Run a single-turn completion and return the reply text.

        Raises:
            AIUnconfiguredError: No API key configured
            AIAPIError: OpenAI rejected the request
            AITransportError: OpenAI could not be reached
        """
        client = self._get_client()

        try:
            response = await client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": prompt}],
                max_tokens=max_tokens,
                temperature=temperature,
            )
        except APIStatusError as e:
            raise AIAPIError(f"OpenAI returned HTTP {e.status_code}", e.status_code, e.body) from e
        except APIConnectionError as e:
            raise AITransportError(f"OpenAI unreachable: {e}") from e

        content = response.choices[0].message.content if response.choices else None
        return content or ""


_ai_client: Optional[AIClient] = None


def get_ai_client() -> AIClient:
    """Process-wide completion client."""
    global _ai_client
    if _ai_client is None:
        _ai_client = AIClient()
    return _ai_client
