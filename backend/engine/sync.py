"""
Incremental mailbox synchronization.

The SyncEngine keeps the local message store consistent with Gmail:
- History deltas from push notifications (per-account cursor)
- Manual full syncs of the current INBOX
- Fetch, parse, store, enqueue downstream processing and archive per message
- One forced token refresh and retry when Gmail rejects the credentials
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from engine.notifier import FETCH_COMPLETE, FETCHING_EMAILS, Notifier, account_topic, broadcaster
from engine.parser import parse_message
from engine.scheduler import PROCESS_MESSAGE_JOB
from engine.token_guard import TokenGuard
from gmail_client import INBOX_LABEL, GmailAPIError, GmailAuthError, GmailClient
from models import MailAccount
from services.messages import create_message, mark_as_archived

logger = logging.getLogger(__name__)

Enqueue = Callable[[str, Dict[str, Any]], Awaitable[int]]

CURSOR_UPDATE_ATTEMPTS = 3


@dataclass
class SyncResult:
    """Counters for one sync pass."""
    fetched: int = 0
    stored: int = 0
    archived: int = 0
    failed: List[str] = field(default_factory=list)
    cursor: Optional[str] = None


def added_inbox_message_ids(history: List[Dict[str, Any]]) -> List[str]:
    """
    Collect ids of messages added to the INBOX, in order and without repeats.

    Example:
        >>> added_inbox_message_ids([
        ...     {"messagesAdded": [{"message": {"id": "a", "labelIds": ["INBOX"]}}]},
        ...     {"messagesAdded": [{"message": {"id": "a", "labelIds": ["INBOX"]}},
        ...                        {"message": {"id": "b", "labelIds": ["SENT"]}}]},
        ... ])
        ['a']
    """
    seen = set()
    ids: List[str] = []
    for record in history:
        for added in record.get("messagesAdded", []):
            message = added.get("message") or {}
            message_id = message.get("id")
            if not message_id or INBOX_LABEL not in (message.get("labelIds") or []):
                continue
            if message_id not in seen:
                seen.add(message_id)
                ids.append(message_id)
    return ids


def _cursor_value(history_id: Union[int, str, None]) -> Optional[int]:
    if history_id is None:
        return None
    try:
        return int(history_id)
    except (TypeError, ValueError):
        return None


class SyncEngine:
    """
    Fetches new mail for one account at a time.

    Attributes:
        db: Async database session
        gmail: Gmail API facade
        notifier: Receives fetching/complete and record change events
        enqueue: Schedules downstream processing jobs (optional)
        token_guard: Keeps the account's access token usable
    """

    def __init__(
        self,
        db: AsyncSession,
        gmail: GmailClient,
        notifier: Notifier = broadcaster,
        enqueue: Optional[Enqueue] = None,
        token_guard: Optional[TokenGuard] = None,
        batch_size: int = None,
        full_sync_max: int = None,
    ):
        self.db = db
        self.gmail = gmail
        self.notifier = notifier
        self.enqueue = enqueue
        self.token_guard = token_guard or TokenGuard(db, gmail)
        self.batch_size = batch_size or settings.SYNC_BATCH_SIZE
        self.full_sync_max = full_sync_max or settings.FULL_SYNC_MAX_MESSAGES

    async def _call(self, account: MailAccount, method: Callable[..., Awaitable[Any]], *args: Any) -> Any:
        """Call a Gmail method, refreshing the token and retrying once on an auth error."""
        try:
            return await method(account, *args)
        except GmailAuthError:
            logger.info(f"Gmail rejected credentials for {account.email}, refreshing and retrying")
            await self.token_guard.refresh(account)
            return await method(account, *args)

    async def _recover(self, account: MailAccount) -> None:
        await self.db.rollback()
        await self.db.refresh(account)

    # ------------------------------------------------------------------
    # Push notifications
    # ------------------------------------------------------------------

    async def process_notification(self, account: MailAccount, history_id: Union[int, str]) -> SyncResult:
        """
        Handle one push notification for an account.

        An account without a cursor adopts the notification's historyId
        and fetches nothing. Otherwise the history since the stored cursor
        is fetched and the cursor advanced, even when nothing was added.

        Raises:
            GmailAPIError: If the history itself could not be read; the
                cursor is left untouched so a retry sees the same delta
        """
        cursor = account.last_history_id

        if cursor is None:
            logger.info(f"Adopting history id {history_id} as baseline for {account.email}")
            await self.advance_cursor(account, None, str(history_id))
            return SyncResult(cursor=account.last_history_id)

        await self.token_guard.ensure_valid(account)

        history = await self._call(account, self.gmail.get_history, cursor)
        message_ids = added_inbox_message_ids(history.get("history", []))

        result = SyncResult()
        if message_ids:
            topic = account_topic(account.id)
            self.notifier.notify(topic, {"event": FETCHING_EMAILS, "count": len(message_ids)})
            result = await self._sync_messages(account, message_ids)
            self.notifier.notify(topic, {"event": FETCH_COMPLETE, "count": result.stored})
        else:
            logger.info(f"No new INBOX messages for {account.email} since {cursor}")

        await self.advance_cursor(account, cursor, str(history_id))
        result.cursor = account.last_history_id
        return result

    # ------------------------------------------------------------------
    # Manual sync
    # ------------------------------------------------------------------

    async def full_sync(self, account: MailAccount) -> SyncResult:
        """
        Import the newest INBOX messages of an account.

        Never reads or moves the history cursor.
        """
        await self.token_guard.ensure_valid(account)

        message_ids = await self._call(account, self.gmail.list_inbox_message_ids, self.full_sync_max)
        logger.info(f"Full sync of {account.email}: {len(message_ids)} message(s) in INBOX")

        result = SyncResult()
        for start in range(0, len(message_ids), self.batch_size):
            batch = message_ids[start:start + self.batch_size]
            batch_result = await self._sync_messages(account, batch)
            result.fetched += batch_result.fetched
            result.stored += batch_result.stored
            result.archived += batch_result.archived
            result.failed.extend(batch_result.failed)

        result.cursor = account.last_history_id
        return result

    # ------------------------------------------------------------------
    # Per-message pipeline
    # ------------------------------------------------------------------

    async def _sync_messages(self, account: MailAccount, message_ids: List[str]) -> SyncResult:
        result = SyncResult()
        for message_id in message_ids:
            try:
                await self._sync_one(account, message_id, result)
            except Exception as e:
                logger.error(f"Failed to sync message {message_id} for {account.email}: {e}", exc_info=True)
                result.failed.append(message_id)
                await self._recover(account)
        return result

    async def _sync_one(self, account: MailAccount, message_id: str, result: SyncResult) -> None:
        try:
            raw = await self._call(account, self.gmail.get_message, message_id)
        except GmailAPIError as e:
            logger.warning(f"Skipping message {message_id}: {e}")
            result.failed.append(message_id)
            return
        result.fetched += 1

        attrs = parse_message(raw, account.id, account.user_id)
        message = await create_message(self.db, attrs, self.notifier)
        if message is None:
            await self.db.refresh(account)
            return
        result.stored += 1

        if self.enqueue is not None:
            await self.enqueue(PROCESS_MESSAGE_JOB, {"message_id": message.id})

        try:
            await self._call(account, self.gmail.archive_message, message_id)
        except GmailAPIError as e:
            logger.warning(f"Failed to archive message {message_id} in Gmail: {e}")
            return

        await mark_as_archived(self.db, message, self.notifier)
        result.archived += 1

    # ------------------------------------------------------------------
    # Cursor
    # ------------------------------------------------------------------

    async def advance_cursor(
        self,
        account: MailAccount,
        expected: Optional[str],
        new_history_id: str,
    ) -> bool:
        """
        Move the stored history cursor forward to new_history_id.

        The write only applies while the stored value still equals the one
        the caller read; on a conflict the fresh value is re-read and the
        move is retried. The cursor never moves backwards.

        Returns:
            True if the cursor was changed
        """
        new_value = _cursor_value(new_history_id)
        if new_value is None:
            logger.warning(f"Ignoring non-numeric history id {new_history_id!r} for {account.email}")
            return False

        for _ in range(CURSOR_UPDATE_ATTEMPTS):
            current_value = _cursor_value(expected)
            if current_value is not None and new_value <= current_value:
                logger.debug(f"Cursor for {account.email} already at {expected}, not moving to {new_history_id}")
                return False

            if expected is None:
                condition = MailAccount.last_history_id.is_(None)
            else:
                condition = MailAccount.last_history_id == expected

            stmt = (
                update(MailAccount)
                .where(MailAccount.id == account.id, condition)
                .values(last_history_id=str(new_value))
                .execution_options(synchronize_session=False)
            )
            outcome = await self.db.execute(stmt)
            await self.db.commit()
            await self.db.refresh(account)

            if outcome.rowcount == 1:
                logger.info(f"History cursor for {account.email} advanced to {new_value}")
                return True

            logger.info(f"Cursor for {account.email} changed concurrently, re-reading")
            expected = account.last_history_id

        logger.warning(f"Gave up advancing cursor for {account.email} to {new_value}")
        return False
