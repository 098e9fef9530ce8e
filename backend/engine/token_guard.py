"""
Access token lifecycle for Gmail accounts.

Makes sure a MailAccount carries a usable access token before the sync
engine talks to Gmail, refreshing and persisting it when it has expired.
"""

import logging
from datetime import datetime, timedelta

from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from gmail_client import GmailAPIError, GmailClient
from models import MailAccount
from utils.encryption import encrypt_token

logger = logging.getLogger(__name__)


def token_expired(account: MailAccount, now: datetime = None) -> bool:
    """An account without an expiry is treated as holding a valid token."""
    if account.token_expires_at is None:
        return False
    now = now or datetime.utcnow()
    return now > account.token_expires_at


class TokenGuard:
    """
    Refreshes expired access tokens and writes them back to the account row.

    Only the access_token and token_expires_at columns are touched.
    """

    def __init__(
        self,
        db: AsyncSession,
        gmail: GmailClient,
        safety_margin_seconds: int = None,
    ):
        self.db = db
        self.gmail = gmail
        if safety_margin_seconds is None:
            safety_margin_seconds = settings.TOKEN_EXPIRY_SAFETY_MARGIN_SECONDS
        self.safety_margin = timedelta(seconds=safety_margin_seconds)

    async def ensure_valid(self, account: MailAccount) -> MailAccount:
        """
        Return the account with a non-expired access token.

        On refresh failure the account is returned unchanged; the next
        Gmail call will fail with an auth error that the caller handles.
        """
        if not token_expired(account):
            return account
        return await self.refresh(account)

    async def refresh(self, account: MailAccount) -> MailAccount:
        """
        Unconditionally refresh the access token.

        Used after Gmail rejected a token that still looked valid locally.
        """
        try:
            refreshed = await self.gmail.refresh_access_token(account)
        except GmailAPIError as e:
            logger.error(f"Failed to refresh token for {account.email}: {e}")
            return account

        now = datetime.utcnow()
        account.access_token = encrypt_token(refreshed.access_token)
        account.token_expires_at = now + timedelta(seconds=refreshed.expires_in) - self.safety_margin
        await self.db.commit()

        logger.info(f"Refreshed Gmail credentials for {account.email}")
        return account
