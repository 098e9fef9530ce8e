"""
Background job handlers.

Binds the sync, enrichment and unsubscribe pipelines to the job kinds
executed by the JobRunner. Every handler receives the persisted job
args and the attempt number and can be re-run safely.
"""

import logging
from typing import Any, Dict

from sqlalchemy.ext.asyncio import AsyncSession

from ai_client import AIClient
from config import settings
from engine.enrichment import process_message
from engine.link_finder import LinkDiscoveryError, UnsubscribeLinkFinder
from engine.notifier import Notifier, broadcaster
from engine.scheduler import (
    FULL_SYNC_JOB,
    PROCESS_MESSAGE_JOB,
    SYNC_HISTORY_JOB,
    UNSUBSCRIBE_JOB,
    JobRunner,
)
from engine.sync import SyncEngine
from engine.unsubscribe import (
    AI_UNCONFIGURED,
    LINK_DETECTION_FAILED,
    UnsubscribeExecutor,
    unsubscribe_message,
)
from gmail_client import GmailClient
from models import UNSUBSCRIBE_FAILED
from services.messages import get_account, get_message

logger = logging.getLogger(__name__)


# Failures a retry cannot fix
FINAL_UNSUBSCRIBE_ERRORS = {
    AI_UNCONFIGURED,
    LINK_DETECTION_FAILED[LinkDiscoveryError.UNCONFIGURED],
}


class UnsubscribeAttemptFailed(Exception):
    """Raised so the queue schedules another unsubscribe attempt."""
    pass


def register_job_handlers(
    runner: JobRunner,
    gmail: GmailClient,
    ai: AIClient,
    notifier: Notifier = broadcaster,
    executor: UnsubscribeExecutor = None,
) -> JobRunner:
    """
    Register one handler per job kind on the runner.

    Args:
        runner: Job runner to register on
        gmail: Gmail API facade shared by all sync jobs
        ai: Completion client for enrichment and unsubscribe
        notifier: Receives broadcasts from the pipelines
        executor: Unsubscribe executor (defaults to one built on ai)

    Returns:
        The same runner
    """
    finder = UnsubscribeLinkFinder(ai)
    executor = executor or UnsubscribeExecutor(ai)

    def _sync_engine(db: AsyncSession) -> SyncEngine:
        return SyncEngine(db, gmail, notifier=notifier, enqueue=runner.enqueue)

    async def sync_history(db: AsyncSession, args: Dict[str, Any], attempt: int) -> None:
        account = await get_account(db, args["account_id"])
        if account is None:
            logger.warning(f"Account {args['account_id']} no longer exists, dropping history sync")
            return
        await _sync_engine(db).process_notification(account, args["history_id"])

    async def full_sync(db: AsyncSession, args: Dict[str, Any], attempt: int) -> None:
        account = await get_account(db, args["account_id"])
        if account is None:
            logger.warning(f"Account {args['account_id']} no longer exists, dropping full sync")
            return
        result = await _sync_engine(db).full_sync(account)
        logger.info(
            f"Full sync of {account.email} stored {result.stored} of {result.fetched} fetched message(s)"
        )

    async def process(db: AsyncSession, args: Dict[str, Any], attempt: int) -> None:
        message = await get_message(db, args["message_id"])
        if message is None:
            logger.warning(f"Message {args['message_id']} no longer exists, skipping processing")
            return
        await process_message(db, message, ai, notifier)

    async def unsubscribe(db: AsyncSession, args: Dict[str, Any], attempt: int) -> None:
        message = await get_message(db, args["message_id"])
        if message is None:
            logger.warning(f"Message {args['message_id']} no longer exists, skipping unsubscribe")
            return

        outcome = await unsubscribe_message(db, message, finder, executor, notifier)
        if outcome.status == UNSUBSCRIBE_FAILED and outcome.error not in FINAL_UNSUBSCRIBE_ERRORS:
            raise UnsubscribeAttemptFailed(outcome.error)

    runner.register(SYNC_HISTORY_JOB, sync_history, settings.SYNC_JOB_MAX_ATTEMPTS)
    runner.register(FULL_SYNC_JOB, full_sync, 1)
    runner.register(PROCESS_MESSAGE_JOB, process, settings.PROCESS_JOB_MAX_ATTEMPTS)
    runner.register(UNSUBSCRIBE_JOB, unsubscribe, settings.UNSUBSCRIBE_JOB_MAX_ATTEMPTS)
    return runner
