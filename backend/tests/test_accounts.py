"""
Tests for connecting and disconnecting mail accounts.
"""

import pytest
from sqlalchemy import func, select

from config import settings
from gmail_client import GmailAPIError
from models import MailAccount, Message
from services.accounts import connect_account, disconnect_account
from utils.encryption import decrypt_token

OAUTH_DATA = {
    "google_id": "google-9",
    "email": "new@example.com",
    "name": "New Owner",
    "access_token": "at-1",
    "refresh_token": "rt-1",
    "expires_in": 3599,
    "scopes": ["https://www.googleapis.com/auth/gmail.modify"],
}


class TestConnectAccount:
    """Tests for the account upsert after an OAuth exchange."""

    @pytest.mark.asyncio
    async def test_new_account_adopts_watch_history_id(self, test_db, mock_gmail, monkeypatch):
        monkeypatch.setattr(settings, "GMAIL_PUBSUB_TOPIC", "projects/p/topics/gmail")

        account = await connect_account(test_db, mock_gmail, "user-9", OAUTH_DATA)

        assert account.id is not None
        assert decrypt_token(account.access_token) == "at-1"
        assert decrypt_token(account.refresh_token) == "rt-1"
        assert account.token_expires_at is not None
        assert account.last_history_id == "1000"
        mock_gmail.watch.assert_awaited_once_with(account, "projects/p/topics/gmail")

    @pytest.mark.asyncio
    async def test_reconnect_updates_in_place(self, test_db, mock_gmail, monkeypatch):
        monkeypatch.setattr(settings, "GMAIL_PUBSUB_TOPIC", None)

        first = await connect_account(test_db, mock_gmail, "user-9", OAUTH_DATA)
        second = await connect_account(
            test_db, mock_gmail, "user-9", {**OAUTH_DATA, "access_token": "at-2", "refresh_token": None}
        )

        assert second.id == first.id
        assert decrypt_token(second.access_token) == "at-2"
        assert decrypt_token(second.refresh_token) == "rt-1"
        assert (await test_db.execute(select(func.count(MailAccount.id)))).scalar_one() == 1
        mock_gmail.watch.assert_not_called()

    @pytest.mark.asyncio
    async def test_watch_failure_does_not_fail_connection(self, test_db, mock_gmail, monkeypatch):
        monkeypatch.setattr(settings, "GMAIL_PUBSUB_TOPIC", "projects/p/topics/gmail")
        mock_gmail.watch.side_effect = GmailAPIError("forbidden", status=403)

        account = await connect_account(test_db, mock_gmail, "user-9", OAUTH_DATA)

        assert account.id is not None
        assert account.last_history_id is None


class TestDisconnectAccount:
    """Tests for the best-effort teardown."""

    @pytest.mark.asyncio
    async def test_upstream_failures_do_not_block_delete(self, test_db, account, stored_message, mock_gmail):
        mock_gmail.stop_watch.side_effect = GmailAPIError("gone", status=404)
        mock_gmail.revoke_token.return_value = False

        await disconnect_account(test_db, mock_gmail, account)

        assert (await test_db.execute(select(func.count(MailAccount.id)))).scalar_one() == 0
        assert (await test_db.execute(select(func.count(Message.id)))).scalar_one() == 0
