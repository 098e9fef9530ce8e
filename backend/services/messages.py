"""
Message store operations used by the sync and unsubscribe pipelines.

Every write is a single-row commit followed by a fire-and-forget
broadcast on the owner's topic.
"""

import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from engine.scheduler import UNSUBSCRIBE_JOB
from engine.notifier import (
    MESSAGE_CREATED,
    MESSAGE_UPDATED,
    Notifier,
    broadcaster,
    user_messages_topic,
)
from gmail_client import GmailAPIError, GmailClient
from models import UNSUBSCRIBE_PENDING, Category, MailAccount, Message

logger = logging.getLogger(__name__)


async def get_account(db: AsyncSession, account_id: int) -> Optional[MailAccount]:
    return await db.get(MailAccount, account_id)


async def get_message(db: AsyncSession, message_id: int) -> Optional[Message]:
    return await db.get(Message, message_id)


async def find_message(db: AsyncSession, account_id: int, gmail_message_id: str) -> Optional[Message]:
    stmt = select(Message).where(
        Message.account_id == account_id,
        Message.gmail_message_id == gmail_message_id,
    )
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def list_categories(db: AsyncSession, user_id: str) -> List[Category]:
    stmt = select(Category).where(Category.user_id == user_id).order_by(Category.name)
    result = await db.execute(stmt)
    return list(result.scalars().all())


def _event(name: str, message: Message) -> Dict[str, Any]:
    return {"event": name, "message_id": message.id, "account_id": message.account_id}


async def create_message(
    db: AsyncSession,
    attrs: Dict[str, Any],
    notifier: Notifier = broadcaster,
) -> Optional[Message]:
    """
    Insert a parsed message.

    The (account_id, gmail_message_id) unique constraint is the only
    de-duplication: a redelivered message is a no-op and returns None.

    Returns:
        The new Message, or None if it was already stored
    """
    existing = await find_message(db, attrs["account_id"], attrs["gmail_message_id"])
    if existing is not None:
        logger.info(f"Message {attrs['gmail_message_id']} already stored, skipping")
        return None

    message = Message(**attrs)
    db.add(message)
    try:
        await db.commit()
    except IntegrityError:
        # Lost a race with a concurrent insert of the same message
        await db.rollback()
        logger.info(f"Message {attrs['gmail_message_id']} inserted concurrently, skipping")
        return None

    notifier.notify(user_messages_topic(message.user_id), _event(MESSAGE_CREATED, message))
    return message


async def update_message(
    db: AsyncSession,
    message: Message,
    notifier: Notifier = broadcaster,
    **fields: Any,
) -> Message:
    """Set the given columns on a message, commit and broadcast the change."""
    for name, value in fields.items():
        setattr(message, name, value)
    await db.commit()

    notifier.notify(user_messages_topic(message.user_id), _event(MESSAGE_UPDATED, message))
    return message


async def mark_as_archived(db: AsyncSession, message: Message, notifier: Notifier = broadcaster) -> Message:
    return await update_message(db, message, notifier, archived_at=datetime.utcnow())


async def delete_message(
    db: AsyncSession,
    gmail: GmailClient,
    message: Message,
) -> None:
    """
    Delete a message locally after a best-effort trash in Gmail.

    A Gmail failure is logged; the local row is removed regardless.
    """
    account = await get_account(db, message.account_id)
    if account is not None:
        try:
            await gmail.trash_message(account, message.gmail_message_id)
        except GmailAPIError as e:
            logger.warning(f"Failed to trash {message.gmail_message_id} in Gmail: {e}")

    await db.delete(message)
    await db.commit()
    logger.info(f"Deleted message {message.id}")


async def request_unsubscribe(
    db: AsyncSession,
    message_ids: List[int],
    enqueue: Callable[[str, Dict[str, Any]], Awaitable[int]],
    notifier: Notifier = broadcaster,
) -> Dict[int, int]:
    """
    Reset each message's unsubscribe attempt to pending and enqueue a job.

    Unknown ids are skipped.

    Returns:
        Mapping of message id to enqueued job id
    """
    jobs: Dict[int, int] = {}

    for message_id in message_ids:
        message = await get_message(db, message_id)
        if message is None:
            logger.warning(f"Unsubscribe requested for unknown message {message_id}")
            continue

        await update_message(
            db,
            message,
            notifier,
            unsubscribe_status=UNSUBSCRIBE_PENDING,
            unsubscribe_link=None,
            unsubscribe_method=None,
            unsubscribe_attempted_at=None,
            unsubscribe_completed_at=None,
            unsubscribe_error=None,
        )
        jobs[message_id] = await enqueue(UNSUBSCRIBE_JOB, {"message_id": message_id})

    return jobs
