"""
Mail account lifecycle: connecting a mailbox after the OAuth exchange
and disconnecting it again.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from gmail_client import GmailAPIError, GmailClient
from models import MailAccount, Message
from utils.encryption import encrypt_token

logger = logging.getLogger(__name__)


async def connect_account(
    db: AsyncSession,
    gmail: GmailClient,
    user_id: str,
    oauth_data: Dict[str, Any],
) -> MailAccount:
    """
    Create or update the account for (user_id, google_id) from an OAuth exchange.

    Args:
        db: Async database session
        gmail: Gmail API facade used to set up push notifications
        user_id: Owner of the mailbox
        oauth_data: google_id, email, name, access_token, refresh_token,
            expires_in (seconds) and scopes

    Returns:
        MailAccount: The stored account
    """
    stmt = select(MailAccount).where(
        MailAccount.user_id == user_id,
        MailAccount.google_id == oauth_data["google_id"],
    )
    result = await db.execute(stmt)
    account = result.scalar_one_or_none()

    if account is None:
        account = MailAccount(user_id=user_id, google_id=oauth_data["google_id"])
        db.add(account)
        logger.info(f"Connecting new Gmail account {oauth_data['email']} for user {user_id}")
    else:
        logger.info(f"Updating credentials of Gmail account {account.email}")

    account.email = oauth_data["email"]
    account.name = oauth_data.get("name")
    account.access_token = encrypt_token(oauth_data["access_token"])
    # Google only returns a refresh token on first consent
    if oauth_data.get("refresh_token"):
        account.refresh_token = encrypt_token(oauth_data["refresh_token"])
    expires_in = oauth_data.get("expires_in")
    account.token_expires_at = (
        datetime.utcnow() + timedelta(seconds=int(expires_in)) if expires_in is not None else None
    )
    account.scopes = list(oauth_data.get("scopes") or [])

    await db.commit()
    await db.refresh(account)

    await setup_push_notifications(db, gmail, account)
    return account


async def setup_push_notifications(
    db: AsyncSession,
    gmail: GmailClient,
    account: MailAccount,
) -> Optional[str]:
    """
    Start INBOX push notifications and adopt the returned historyId.

    Failures are logged; the account stays connected without push.

    Returns:
        The history id now stored on the account, if any
    """
    topic = settings.GMAIL_PUBSUB_TOPIC
    if not topic:
        logger.warning("GMAIL_PUBSUB_TOPIC not configured, push notifications disabled")
        return None

    try:
        response = await gmail.watch(account, topic)
    except GmailAPIError as e:
        if e.status == 403:
            logger.warning(
                f"Gmail refused to publish to {topic} for {account.email}; "
                "grant gmail-api-push@system.gserviceaccount.com publisher rights on the topic"
            )
        else:
            logger.error(f"Failed to set up push notifications for {account.email}: {e}")
        return None

    history_id = response.get("historyId")
    if history_id is not None and account.last_history_id is None:
        account.last_history_id = str(history_id)
        await db.commit()

    logger.info(f"Push notifications active for {account.email} (history id {history_id})")
    return account.last_history_id


async def disconnect_account(
    db: AsyncSession,
    gmail: GmailClient,
    account: MailAccount,
) -> None:
    """
    Stop push notifications, revoke the token and delete the account
    together with its messages. The Gmail calls are best-effort.
    """
    email = account.email

    try:
        await gmail.stop_watch(account)
    except GmailAPIError as e:
        logger.warning(f"Failed to stop push notifications for {email}: {e}")

    if not await gmail.revoke_token(account):
        logger.warning(f"OAuth token for {email} was not revoked")

    await db.execute(delete(Message).where(Message.account_id == account.id))
    await db.delete(account)
    await db.commit()

    logger.info(f"Disconnected Gmail account {email}")
