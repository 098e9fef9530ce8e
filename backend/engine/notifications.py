"""
Gmail push notification intake.

Decodes Pub/Sub envelopes and hands the mailbox cursor to the job queue;
the actual history sync runs in a background job.
"""

import base64
import binascii
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from engine.scheduler import SYNC_HISTORY_JOB
from models import MailAccount
from schemas import GmailNotificationData, PubSubEnvelope

logger = logging.getLogger(__name__)


class NotificationDecodeError(ValueError):
    """The push body is not a Pub/Sub envelope carrying a Gmail notification."""
    pass


def decode_notification(envelope: Any) -> GmailNotificationData:
    """
    Decode a Pub/Sub push body.

    Args:
        envelope: Parsed JSON body, {"message": {"data": <base64 JSON>}}

    Raises:
        NotificationDecodeError: On any malformed layer
    """
    try:
        parsed = PubSubEnvelope.model_validate(envelope)
        payload = base64.b64decode(parsed.message.data, validate=True)
        return GmailNotificationData.model_validate(json.loads(payload))
    except (ValidationError, binascii.Error, UnicodeDecodeError, ValueError) as e:
        raise NotificationDecodeError(f"Invalid push notification: {e}") from e


async def dispatch_notification(
    db: AsyncSession,
    notification: GmailNotificationData,
    enqueue: Callable[[str, Dict[str, Any]], Awaitable[int]],
) -> List[int]:
    """
    Enqueue a history sync for every account registered with the address.

    Returns:
        Ids of the enqueued jobs (empty for unknown addresses)
    """
    stmt = select(MailAccount.id).where(MailAccount.email == notification.emailAddress)
    result = await db.execute(stmt)
    account_ids = list(result.scalars().all())

    if not account_ids:
        logger.warning(f"Push notification for unknown account {notification.emailAddress}")
        return []

    job_ids = []
    for account_id in account_ids:
        job_ids.append(await enqueue(
            SYNC_HISTORY_JOB,
            {"account_id": account_id, "history_id": notification.historyId},
        ))

    logger.info(
        f"Queued history sync for {notification.emailAddress} "
        f"(history id {notification.historyId}, {len(job_ids)} account(s))"
    )
    return job_ids
