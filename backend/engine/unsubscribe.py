"""
Unsubscribe automation for Mail Sweep.

This module runs the unsubscribe pipeline for a stored message:
- Link discovery (deterministic patterns, then the AI model)
- Fetching the unsubscribe page and asking the AI model for an action plan
- Executing the plan (direct confirmation or form submission)
- Verifying success from indicators in the resulting page
- Tracking the attempt on the Message row
"""

import json
import logging
import posixpath
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit

import httpx
from pydantic import TypeAdapter, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from ai_client import AIClient, AIError, AIUnconfiguredError, strip_code_fences
from config import settings
from engine.link_finder import LinkDiscoveryError, LinkNotFound, UnsubscribeLinkFinder
from engine.notifier import Notifier, broadcaster
from models import (
    UNSUBSCRIBE_FAILED,
    UNSUBSCRIBE_NOT_FOUND,
    UNSUBSCRIBE_PENDING_CONFIRMATION,
    UNSUBSCRIBE_PROCESSING,
    UNSUBSCRIBE_SUCCESS,
    Message,
)
from schemas import ActionPlan, ConfirmationNeededPlan, DirectPlan, FormPlan
from services.messages import get_account, update_message

logger = logging.getLogger(__name__)


# ============================================================================
# Failure causes
# ============================================================================

PAGE_NOT_UNDERSTOOD = (
    "Could not understand the unsubscribe page format. The AI was unable to parse "
    "the page structure. This may require manual action."
)
MODEL_CALL_FAILED = "AI analysis of the unsubscribe page failed. Please try again or unsubscribe manually."
AI_UNCONFIGURED = "AI service is not configured. Please unsubscribe manually."
HTTP_ERROR = "HTTP error {status} when accessing the unsubscribe page."
NETWORK_FAILURE = "Network request failed. Please check your connection and try again."
FORM_SUBMISSION_FAILED = "Form submission failed with HTTP status {status}."
FORM_INVALID_METHOD = "Form submission failed: unsupported HTTP method {method}."
FORM_SUBMISSION_CRASHED = "Form submission raised an unexpected error. Please unsubscribe manually."
SUCCESS_UNVERIFIED = (
    "Unsubscribe action completed but success could not be verified. Please check manually."
)
NO_LINK_FOUND = (
    "No unsubscribe link found in email. The email may not have an unsubscribe option."
)
REQUIRES_CONFIRMATION = "Requires manual confirmation. Please visit the link to complete."
REQUIRES_MANUAL_ACTION = "Unsubscribe requires manual action via {method}: {url}"
LINK_DETECTION_FAILED = {
    LinkDiscoveryError.PARSE_FAILED: "Link detection failed: the AI reply could not be parsed.",
    LinkDiscoveryError.MODEL_FAILED: "Link detection failed: the AI model call failed.",
    LinkDiscoveryError.TRANSPORT_FAILED: "Link detection failed: the AI service could not be reached.",
    LinkDiscoveryError.UNCONFIGURED: "Link detection failed: AI service is not configured.",
}
UNEXPECTED_ERROR = "Unsubscribe failed unexpectedly: {error}"

ACTION_PLAN_PROMPT = """Analyze this unsubscribe page HTML and determine what actions are needed.

HTML Content (truncated):
{html}

IMPORTANT: Look for:
- Forms with action URLs
- Submit buttons (look for button, input type="submit", or clickable elements)
- Radio buttons or checkboxes for unsubscribe reasons
- The actual form action URL (could be relative or absolute)

If you see an "Unsubscribe" button, this is a "form" type.
If the page says you're already unsubscribed, this is a "direct" type.

CRITICAL: For radio buttons, select ONLY ONE value (the first option).
Do NOT return arrays like ["1", "2"] - return a single string value like "1".

Respond ONLY with valid JSON, no other text:
{{
  "type": "direct" | "form" | "confirmation_needed",
  "success_indicators": ["unsubscribed", "removed", "opted out"],
  "form_data": {{
    "action_url": "full URL or relative path",
    "method": "POST" | "GET",
    "fields": {{"field_name": "single_value"}}
  }},
  "requires_email": false
}}

User email: {email}
Original URL: {url}
"""

_action_plan_adapter = TypeAdapter(ActionPlan)


@dataclass
class UnsubscribeOutcome:
    """
    Terminal result of one unsubscribe attempt.

    Attributes:
        status: success, failed, not_found or pending_confirmation
        error: Human-readable cause for anything but success
    """
    status: str
    error: Optional[str] = None


class ActionPlanError(ValueError):
    """The model's action plan is not one of the accepted shapes."""
    pass


# ============================================================================
# Plan helpers
# ============================================================================


def parse_action_plan(reply: str):
    """
    Decode the model's reply into DirectPlan, FormPlan or ConfirmationNeededPlan.

    Raises:
        ActionPlanError: For non-JSON replies or any other shape
    """
    try:
        return _action_plan_adapter.validate_python(json.loads(strip_code_fences(reply)))
    except (ValueError, ValidationError) as e:
        raise ActionPlanError(str(e)) from e


def resolve_action_url(action_url: str, original_url: str) -> str:
    """
    Resolve a form action against the page it was found on.

    Example:
        >>> resolve_action_url("/u?id=1", "https://example.com/mail/optout")
        'https://example.com/u?id=1'
        >>> resolve_action_url("confirm", "https://example.com/mail/optout")
        'https://example.com/mail/confirm'
    """
    if action_url.startswith("http"):
        return action_url

    original = urlsplit(original_url)
    origin = f"{original.scheme}://{original.netloc}"

    if action_url.startswith("/"):
        return f"{origin}{action_url}"

    base_path = posixpath.dirname(original.path or "/").rstrip("/")
    return f"{origin}{base_path}/{action_url}"


def normalize_fields(
    fields: Dict[str, Any],
    email_address: Optional[str] = None,
) -> Dict[str, str]:
    """
    Prepare form fields for a URL-encoded submission.

    Adds the email field when given and collapses list values to their
    first element; models sometimes answer radio groups with arrays.
    """
    normalized = dict(fields)
    if email_address is not None:
        normalized["email"] = email_address

    result: Dict[str, str] = {}
    for key, value in normalized.items():
        if isinstance(value, list):
            logger.debug(f"Collapsing list field '{key}': {value!r}")
            value = value[0] if value else ""
        if value is None:
            value = ""
        if isinstance(value, bool):
            value = "true" if value else "false"
        result[key] = value if isinstance(value, str) else str(value)
    return result


def contains_success_indicator(html: str, indicators: List[str]) -> Optional[str]:
    """Return the first indicator found in html (case-insensitive), if any."""
    html_lower = (html or "").lower()
    for indicator in indicators:
        if indicator and indicator.lower() in html_lower:
            return indicator
    return None


# ============================================================================
# Executor
# ============================================================================


class UnsubscribeExecutor:
    """
    Visits an unsubscribe URL and completes it as instructed by the AI model.

    Attributes:
        ai: Completion client used to read the page
        success_indicators: Used when the model supplies none
        transport: Optional httpx transport (tests use httpx.MockTransport)
    """

    def __init__(
        self,
        ai: AIClient,
        success_indicators: Optional[List[str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        max_html_chars: int = None,
    ):
        self.ai = ai
        self.success_indicators = success_indicators or list(settings.UNSUBSCRIBE_SUCCESS_INDICATORS)
        self.transport = transport
        self.max_html_chars = max_html_chars or settings.PAGE_PROMPT_HTML_CHARS

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            follow_redirects=True,
            max_redirects=settings.UNSUBSCRIBE_MAX_REDIRECTS,
            timeout=httpx.Timeout(
                settings.UNSUBSCRIBE_READ_TIMEOUT,
                connect=settings.UNSUBSCRIBE_CONNECT_TIMEOUT,
            ),
            headers={"User-Agent": "Mozilla/5.0 (Mail Sweep Email Manager)"},
            transport=self.transport,
        )

    def _indicators(self, plan) -> List[str]:
        return plan.success_indicators or self.success_indicators

    async def execute(self, url: str, email_address: str) -> UnsubscribeOutcome:
        """
        Fetch the unsubscribe page, get an action plan and carry it out.

        Args:
            url: Unsubscribe URL found in the message
            email_address: Mailbox address to submit when a form asks for it

        Returns:
            UnsubscribeOutcome with a terminal status
        """
        logger.info(f"Visiting unsubscribe URL: {url}")

        try:
            async with self._client() as client:
                response = await client.get(url)
        except httpx.RequestError as e:
            logger.error(f"Unsubscribe page request failed for {url}: {e}")
            return UnsubscribeOutcome(UNSUBSCRIBE_FAILED, NETWORK_FAILURE)

        if not response.is_success:
            logger.error(f"Unsubscribe page returned HTTP {response.status_code}: {url}")
            return UnsubscribeOutcome(UNSUBSCRIBE_FAILED, HTTP_ERROR.format(status=response.status_code))

        html = response.text
        logger.info(f"Fetched unsubscribe page ({len(html)} chars), asking AI for an action plan")

        prompt = ACTION_PLAN_PROMPT.format(
            html=html[: self.max_html_chars],
            email=email_address,
            url=url,
        )

        try:
            reply = await self.ai.complete(prompt, max_tokens=400, temperature=0.2)
        except AIUnconfiguredError:
            logger.warning("OpenAI API key not configured, cannot analyze unsubscribe page")
            return UnsubscribeOutcome(UNSUBSCRIBE_FAILED, AI_UNCONFIGURED)
        except AIError as e:
            logger.error(f"OpenAI analysis failed: {e}")
            return UnsubscribeOutcome(UNSUBSCRIBE_FAILED, MODEL_CALL_FAILED)

        try:
            plan = parse_action_plan(reply)
        except ActionPlanError as e:
            logger.error(f"Could not parse action plan: {e}; reply was: {reply}")
            return UnsubscribeOutcome(UNSUBSCRIBE_FAILED, PAGE_NOT_UNDERSTOOD)

        if isinstance(plan, ConfirmationNeededPlan):
            logger.info("AI determined manual confirmation is needed")
            return UnsubscribeOutcome(UNSUBSCRIBE_PENDING_CONFIRMATION, REQUIRES_CONFIRMATION)

        if isinstance(plan, DirectPlan):
            logger.info("AI determined this is a direct unsubscribe")
            return self._verify(html, self._indicators(plan))

        return await self.submit_form(plan, url, email_address)

    async def submit_form(self, plan: FormPlan, original_url: str, email_address: str) -> UnsubscribeOutcome:
        """
        Submit the planned form and verify the response.

        Every failure, expected or not, is turned into a failed outcome.
        """
        action_url = resolve_action_url(plan.form_data.action_url, original_url)
        fields = normalize_fields(
            plan.form_data.fields or {},
            email_address if plan.requires_email else None,
        )
        method = (plan.form_data.method or "post").lower()

        logger.info(f"Submitting form to {action_url} with method {method}, fields: {fields}")

        try:
            async with self._client() as client:
                if method == "post":
                    response = await client.post(action_url, data=fields)
                elif method == "get":
                    response = await client.get(action_url, params=fields)
                else:
                    logger.error(f"Invalid form method: {method}")
                    return UnsubscribeOutcome(UNSUBSCRIBE_FAILED, FORM_INVALID_METHOD.format(method=method.upper()))
        except httpx.RequestError as e:
            logger.error(f"Form submission request failed: {e}")
            return UnsubscribeOutcome(UNSUBSCRIBE_FAILED, NETWORK_FAILURE)
        except Exception as e:
            logger.exception(f"Unexpected error submitting form to {action_url}: {e}")
            return UnsubscribeOutcome(UNSUBSCRIBE_FAILED, FORM_SUBMISSION_CRASHED)

        if not response.is_success:
            logger.error(f"Form submission returned HTTP {response.status_code}")
            return UnsubscribeOutcome(
                UNSUBSCRIBE_FAILED,
                FORM_SUBMISSION_FAILED.format(status=response.status_code),
            )

        return self._verify(response.text, self._indicators(plan))

    def _verify(self, html: str, indicators: List[str]) -> UnsubscribeOutcome:
        found = contains_success_indicator(html, indicators)
        if found:
            logger.info(f"Success indicator '{found}' found in response")
            return UnsubscribeOutcome(UNSUBSCRIBE_SUCCESS)

        logger.warning("No success indicators found in response")
        return UnsubscribeOutcome(UNSUBSCRIBE_FAILED, SUCCESS_UNVERIFIED)


# ============================================================================
# Main Unsubscribe Function
# ============================================================================


async def unsubscribe_message(
    db: AsyncSession,
    message: Message,
    finder: UnsubscribeLinkFinder,
    executor: UnsubscribeExecutor,
    notifier: Notifier = broadcaster,
) -> UnsubscribeOutcome:
    """
    Run one full unsubscribe attempt for a message.

    The attempt fields are reset when it starts and the terminal status is
    always written, so the message never stays in "processing".

    Args:
        db: Async database session
        message: Message whose sender should be unsubscribed from
        finder: Link discovery
        executor: Page/form execution

    Returns:
        UnsubscribeOutcome that was stored on the message
    """
    logger.info(f"Starting unsubscribe for message {message.id} from {message.from_email}")

    await update_message(
        db,
        message,
        notifier,
        unsubscribe_status=UNSUBSCRIBE_PROCESSING,
        unsubscribe_attempted_at=datetime.utcnow(),
        unsubscribe_link=None,
        unsubscribe_method=None,
        unsubscribe_completed_at=None,
        unsubscribe_error=None,
    )

    try:
        outcome = await _run_pipeline(db, message, finder, executor, notifier)
    except Exception as e:
        logger.exception(f"Unsubscribe pipeline crashed for message {message.id}")
        await db.rollback()
        await db.refresh(message)
        outcome = UnsubscribeOutcome(UNSUBSCRIBE_FAILED, UNEXPECTED_ERROR.format(error=e))

    await update_message(
        db,
        message,
        notifier,
        unsubscribe_status=outcome.status,
        unsubscribe_error=outcome.error,
        unsubscribe_completed_at=datetime.utcnow() if outcome.status == UNSUBSCRIBE_SUCCESS else None,
    )

    logger.info(f"Unsubscribe for message {message.id} finished with status {outcome.status}")
    return outcome


async def _run_pipeline(
    db: AsyncSession,
    message: Message,
    finder: UnsubscribeLinkFinder,
    executor: UnsubscribeExecutor,
    notifier: Notifier,
) -> UnsubscribeOutcome:
    try:
        link = await finder.find(message.body)
    except LinkNotFound:
        logger.warning(f"No unsubscribe link found for message {message.id}")
        return UnsubscribeOutcome(UNSUBSCRIBE_NOT_FOUND, NO_LINK_FOUND)
    except LinkDiscoveryError as e:
        logger.error(f"Link detection failed ({e.kind}) for message {message.id}: {e}")
        return UnsubscribeOutcome(UNSUBSCRIBE_FAILED, LINK_DETECTION_FAILED[e.kind])

    logger.info(f"Found unsubscribe link ({link.method}, {link.confidence} confidence): {link.url}")
    await update_message(db, message, notifier, unsubscribe_link=link.url, unsubscribe_method=link.method)

    if urlsplit(link.url).scheme not in ("http", "https"):
        return UnsubscribeOutcome(
            UNSUBSCRIBE_PENDING_CONFIRMATION,
            REQUIRES_MANUAL_ACTION.format(method=link.method, url=link.url),
        )

    account = await get_account(db, message.account_id)
    return await executor.execute(link.url, account.email)
