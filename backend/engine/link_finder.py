"""
Unsubscribe link discovery.

Looks for an unsubscribe URL in a stored message body with a few
deterministic patterns and falls back to asking the AI model.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Optional

from pydantic import ValidationError

from ai_client import (
    AIClient,
    AIError,
    AITransportError,
    AIUnconfiguredError,
    strip_code_fences,
)
from config import settings
from schemas import LinkAnalysis

logger = logging.getLogger(__name__)


UNSUBSCRIBE_URL_PATTERNS = [
    re.compile(r"https?://[^\s\"'<>]+unsubscribe[^\s\"'<>]*", re.IGNORECASE),
    re.compile(r"https?://[^\s\"'<>]+opt-out[^\s\"'<>]*", re.IGNORECASE),
    re.compile(r"https?://[^\s\"'<>]+remove[^\s\"'<>]*", re.IGNORECASE),
]

LINK_PROMPT = """Analyze this email and find the unsubscribe mechanism.
Look for:
1. Unsubscribe links (most common)
2. Mailto links for unsubscribe
3. Instructions to reply with specific text
4. Form submission URLs

Email Body:
{body}

Respond in JSON format:
{{
  "found": true/false,
  "method": "link" | "mailto" | "reply" | "form" | "none",
  "url": "the actual URL or email address",
  "instructions": "any additional steps needed"
}}

If no unsubscribe method found, return {{"found": false}}
"""


@dataclass
class UnsubscribeLink:
    url: str
    method: str
    confidence: str  # high, medium
    instructions: Optional[str] = None


class LinkNotFound(Exception):
    """No unsubscribe mechanism in the message."""
    pass


class LinkDiscoveryError(Exception):
    """
    Link discovery could not complete.

    Attributes:
        kind: One of PARSE_FAILED, MODEL_FAILED, TRANSPORT_FAILED, UNCONFIGURED
    """

    PARSE_FAILED = "parse_failed"
    MODEL_FAILED = "model_failed"
    TRANSPORT_FAILED = "transport_failed"
    UNCONFIGURED = "unconfigured"

    def __init__(self, kind: str, message: str):
        super().__init__(message)
        self.kind = kind


def find_obvious_link(body: Optional[str]) -> Optional[str]:
    """Return the first URL matched by the patterns, tried in order."""
    if not body:
        return None
    for pattern in UNSUBSCRIBE_URL_PATTERNS:
        match = pattern.search(body)
        if match:
            return match.group(0)
    return None


def parse_link_analysis(reply: str) -> UnsubscribeLink:
    """
    Validate the model's JSON reply.

    Raises:
        LinkNotFound: The model reported found=false
        LinkDiscoveryError: The reply is not the expected JSON shape
    """
    try:
        analysis = LinkAnalysis.model_validate(json.loads(strip_code_fences(reply)))
    except (ValueError, ValidationError) as e:
        raise LinkDiscoveryError(LinkDiscoveryError.PARSE_FAILED, f"Unparseable AI reply: {e}") from e

    if not analysis.found:
        raise LinkNotFound()

    if not analysis.url or not analysis.method:
        raise LinkDiscoveryError(
            LinkDiscoveryError.PARSE_FAILED,
            "AI reported an unsubscribe method without url and method",
        )

    return UnsubscribeLink(
        url=analysis.url,
        method=analysis.method,
        confidence="medium",
        instructions=analysis.instructions,
    )


class UnsubscribeLinkFinder:
    """Deterministic patterns first, AI model second."""

    def __init__(self, ai: AIClient, max_body_chars: int = None):
        self.ai = ai
        self.max_body_chars = max_body_chars or settings.LINK_PROMPT_BODY_CHARS

    async def find(self, body: Optional[str]) -> UnsubscribeLink:
        """
        Locate the unsubscribe mechanism in a message body.

        Raises:
            LinkNotFound: Nothing to act on
            LinkDiscoveryError: The AI fallback failed
        """
        if not body:
            raise LinkNotFound()

        link = find_obvious_link(body)
        if link:
            return UnsubscribeLink(url=link, method="link", confidence="high")

        prompt = LINK_PROMPT.format(body=body[: self.max_body_chars])

        try:
            reply = await self.ai.complete(prompt, max_tokens=200, temperature=0.3)
        except AIUnconfiguredError as e:
            raise LinkDiscoveryError(LinkDiscoveryError.UNCONFIGURED, str(e)) from e
        except AITransportError as e:
            raise LinkDiscoveryError(LinkDiscoveryError.TRANSPORT_FAILED, str(e)) from e
        except AIError as e:
            raise LinkDiscoveryError(LinkDiscoveryError.MODEL_FAILED, str(e)) from e

        return parse_link_analysis(reply)
