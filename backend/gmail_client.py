"""
Gmail API client wrapper for Mail Sweep.

This module provides a thin Gmail API facade with:
- Per-account bearer credentials built from the stored (encrypted) tokens
- Classification of failures into API, auth, rate-limit and transport errors
- Retry logic with exponential backoff for rate limiting
- Message listing, retrieval, history deltas and label mutation
- Push notification watch/stop and OAuth token refresh/revoke

The client is stateless: every operation receives the MailAccount whose
credentials it should use. Token freshness is the caller's concern
(see engine.token_guard).

Gmail API Quotas:
- 250 quota units per user per second
- list(): 5 units, get(): 5 units, history.list(): 2 units, modify(): 5 units
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import httplib2
import httpx
from google.auth import exceptions as google_auth_exceptions
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log,
)

from config import settings
from models import MailAccount
from utils.encryption import decrypt_token

logger = logging.getLogger(__name__)


INBOX_LABEL = "INBOX"


# ============================================================================
# Custom Exceptions
# ============================================================================


class GmailAPIError(Exception):
    """
    Base exception for Gmail API errors.

    Attributes:
        status: HTTP status returned by Gmail, if any
        body: Raw response body returned by Gmail, if any
    """

    def __init__(self, message: str, status: Optional[int] = None, body: Any = None):
        super().__init__(message)
        self.status = status
        self.body = body


class GmailAuthError(GmailAPIError):
    """Raised when the access token is expired, revoked or otherwise rejected."""
    pass


class GmailRateLimitError(GmailAPIError):
    """Raised when Gmail API rate limit is exceeded."""
    pass


class GmailTransportError(GmailAPIError):
    """Raised when the request never produced an HTTP response (DNS, timeout, reset)."""
    pass


class GmailTokenRefreshError(GmailAPIError):
    """Raised when Google refuses to exchange the refresh token."""
    pass


@dataclass
class TokenRefresh:
    """New access token issued by Google's token endpoint."""
    access_token: str
    expires_in: int


def _decode_error_body(content: Any) -> Any:
    if isinstance(content, bytes):
        content = content.decode("utf-8", errors="replace")
    try:
        return json.loads(content)
    except (TypeError, ValueError):
        return content


def classify_http_error(error: HttpError, action: str) -> GmailAPIError:
    """
    Map a googleapiclient HttpError onto the client's exception hierarchy.

    Args:
        error: Error raised by the discovery client
        action: Short description of the failed call, used in the message

    Returns:
        GmailAuthError for 401, GmailRateLimitError for 429 or a rate-limited
        403, GmailAPIError for everything else
    """
    status = error.resp.status
    body = _decode_error_body(error.content)

    if status == 401:
        return GmailAuthError(f"Unauthorized while trying to {action}", status, body)
    if status == 429:
        return GmailRateLimitError("Gmail API rate limit exceeded", status, body)
    if status == 403 and "rateLimitExceeded" in str(body):
        return GmailRateLimitError("Gmail API quota exceeded", status, body)
    return GmailAPIError(f"Failed to {action}: HTTP {status}", status, body)


# ============================================================================
# Gmail Client
# ============================================================================


class GmailClient:
    """
    Gmail API client used by the sync engine and account lifecycle.

    Attributes:
        service_factory: Callable building an authenticated Gmail service for
            an account. Defaults to the discovery client; tests inject mocks.
    """

    def __init__(self, service_factory: Optional[Callable[[MailAccount], Any]] = None):
        self.service_factory = service_factory or self._build_service

    @staticmethod
    def _build_service(account: MailAccount):
        """Build a discovery-based Gmail service bound to the account's access token."""
        creds = Credentials(token=decrypt_token(account.access_token))
        return build("gmail", "v1", credentials=creds, cache_discovery=False)

    @retry(
        retry=retry_if_exception_type(GmailRateLimitError),
        wait=wait_exponential(multiplier=1, min=2, max=60),
        stop=stop_after_attempt(5),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
    async def _execute(
        self,
        account: MailAccount,
        make_request: Callable[[Any], Any],
        action: str,
    ) -> Dict[str, Any]:
        """
        Build and execute one API request off the event loop.

        Raises:
            GmailAuthError, GmailRateLimitError, GmailAPIError: on HTTP errors
            GmailTransportError: when no HTTP response was received
        """
        try:
            service = await asyncio.to_thread(self.service_factory, account)
            response = await asyncio.to_thread(make_request(service).execute)
        except HttpError as e:
            raise classify_http_error(e, action) from e
        except (httplib2.HttpLib2Error, google_auth_exceptions.TransportError, OSError) as e:
            raise GmailTransportError(f"Transport failure while trying to {action}: {e}") from e

        return response or {}

    async def list_inbox_message_ids(
        self,
        account: MailAccount,
        max_results: int = 100,
        page_token: Optional[str] = None,
    ) -> List[str]:
        """
        List ids of messages currently labelled INBOX, newest first.

        Follows pagination until max_results ids are collected.

        Args:
            account: Account whose mailbox is listed
            max_results: Maximum number of ids to return
            page_token: Optional token to resume a previous listing

        Returns:
            List of Gmail message ids
        """
        ids: List[str] = []

        while len(ids) < max_results:
            params = {
                "userId": "me",
                "maxResults": min(500, max_results - len(ids)),
                "labelIds": [INBOX_LABEL],
            }
            if page_token:
                params["pageToken"] = page_token

            response = await self._execute(
                account,
                lambda service: service.users().messages().list(**params),
                "list messages",
            )

            ids.extend(m["id"] for m in response.get("messages", []))

            page_token = response.get("nextPageToken")
            if not page_token:
                break

        return ids[:max_results]

    async def get_message(self, account: MailAccount, message_id: str) -> Dict[str, Any]:
        """Get a single message in "full" format (headers and body parts)."""
        return await self._execute(
            account,
            lambda service: service.users().messages().get(userId="me", id=message_id, format="full"),
            f"get message {message_id}",
        )

    async def get_history(self, account: MailAccount, start_history_id: str) -> Dict[str, Any]:
        """
        Fetch messageAdded history records since start_history_id.

        Gmail answers 404 when the cursor is older than its retention window;
        that is reported as an empty, successful history.

        Returns:
            Dict with a "history" list (possibly empty) and "historyId"
        """
        history: List[Dict[str, Any]] = []
        page_token = None
        latest_history_id = None

        while True:
            params = {
                "userId": "me",
                "startHistoryId": start_history_id,
                "historyTypes": ["messageAdded"],
            }
            if page_token:
                params["pageToken"] = page_token

            try:
                response = await self._execute(
                    account,
                    lambda service: service.users().history().list(**params),
                    "list history",
                )
            except GmailAPIError as e:
                if e.status == 404:
                    logger.warning(
                        f"History id {start_history_id} too old for {account.email}, treating as empty"
                    )
                    return {"history": []}
                raise

            history.extend(response.get("history", []))
            latest_history_id = response.get("historyId", latest_history_id)

            page_token = response.get("nextPageToken")
            if not page_token:
                break

        return {"history": history, "historyId": latest_history_id}

    async def modify_labels(
        self,
        account: MailAccount,
        message_id: str,
        add_labels: Optional[List[str]] = None,
        remove_labels: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        """Add and/or remove labels on a single message."""
        body: Dict[str, List[str]] = {}
        if add_labels:
            body["addLabelIds"] = add_labels
        if remove_labels:
            body["removeLabelIds"] = remove_labels

        return await self._execute(
            account,
            lambda service: service.users().messages().modify(userId="me", id=message_id, body=body),
            f"modify labels on {message_id}",
        )

    async def archive_message(self, account: MailAccount, message_id: str) -> Dict[str, Any]:
        """Archive a message by removing the INBOX label."""
        return await self.modify_labels(account, message_id, remove_labels=[INBOX_LABEL])

    async def trash_message(self, account: MailAccount, message_id: str) -> Dict[str, Any]:
        """Move a message to the trash."""
        return await self._execute(
            account,
            lambda service: service.users().messages().trash(userId="me", id=message_id),
            f"trash message {message_id}",
        )

    async def watch(self, account: MailAccount, topic_name: str) -> Dict[str, Any]:
        """
        Register INBOX push notifications on a Pub/Sub topic.

        Returns:
            Dict with "historyId" (current mailbox cursor) and "expiration"
        """
        body = {"topicName": topic_name, "labelIds": [INBOX_LABEL]}
        return await self._execute(
            account,
            lambda service: service.users().watch(userId="me", body=body),
            "set up push notifications",
        )

    async def stop_watch(self, account: MailAccount) -> None:
        """Stop push notifications for the mailbox."""
        await self._execute(
            account,
            lambda service: service.users().stop(userId="me"),
            "stop push notifications",
        )

    async def refresh_access_token(self, account: MailAccount) -> TokenRefresh:
        """
        Exchange the account's refresh token for a new access token.

        Raises:
            GmailTokenRefreshError: If Google rejects the refresh token
            GmailTransportError: If the token endpoint could not be reached
        """
        refresh_token = decrypt_token(account.refresh_token)
        if not refresh_token:
            raise GmailTokenRefreshError(f"No refresh token stored for {account.email}")

        creds = Credentials(
            token=None,
            refresh_token=refresh_token,
            token_uri=settings.GOOGLE_TOKEN_URI,
            client_id=settings.GOOGLE_CLIENT_ID,
            client_secret=settings.GOOGLE_CLIENT_SECRET,
        )

        try:
            await asyncio.to_thread(creds.refresh, Request())
        except google_auth_exceptions.RefreshError as e:
            raise GmailTokenRefreshError(f"Failed to refresh credentials: {e}") from e
        except google_auth_exceptions.TransportError as e:
            raise GmailTransportError(f"Token endpoint unreachable: {e}") from e

        expires_in = 3600
        if creds.expiry is not None:
            expires_in = max(0, int((creds.expiry - datetime.utcnow()).total_seconds()))

        return TokenRefresh(access_token=creds.token, expires_in=expires_in)

    async def revoke_token(self, account: MailAccount) -> bool:
        """
        Revoke the account's access token at Google.

        Returns:
            True if Google confirmed the revocation, False otherwise
        """
        access_token = decrypt_token(account.access_token)
        if not access_token:
            return True

        try:
            async with httpx.AsyncClient(timeout=10) as client:
                response = await client.post(
                    settings.GOOGLE_REVOKE_URI,
                    data={"token": access_token},
                )
        except httpx.RequestError as e:
            logger.warning(f"Error revoking OAuth token for {account.email}: {e}")
            return False

        if 200 <= response.status_code < 300:
            return True

        logger.warning(
            f"Failed to revoke OAuth token for {account.email}: {response.status_code} - {response.text}"
        )
        return False


_gmail_client: Optional[GmailClient] = None


def get_gmail_client() -> GmailClient:
    """Process-wide Gmail client (usable as a FastAPI dependency)."""
    global _gmail_client
    if _gmail_client is None:
        _gmail_client = GmailClient()
    return _gmail_client
