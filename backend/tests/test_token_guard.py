"""
Tests for access token refresh handling.
"""

from datetime import datetime, timedelta

import pytest

from engine.token_guard import TokenGuard, token_expired
from gmail_client import GmailTokenRefreshError, TokenRefresh
from utils.encryption import decrypt_token


class TestTokenGuard:
    """Tests for TokenGuard.ensure_valid."""

    def test_missing_expiry_counts_as_valid(self, account):
        account.token_expires_at = None
        assert token_expired(account) is False

    @pytest.mark.asyncio
    async def test_valid_token_makes_no_call(self, test_db, account, mock_gmail):
        await TokenGuard(test_db, mock_gmail).ensure_valid(account)
        mock_gmail.refresh_access_token.assert_not_called()

    @pytest.mark.asyncio
    async def test_expired_token_is_refreshed_with_margin(self, test_db, account, mock_gmail):
        account.token_expires_at = datetime.utcnow() - timedelta(seconds=1)
        await test_db.commit()
        mock_gmail.refresh_access_token.return_value = TokenRefresh(access_token="fresh", expires_in=3600)

        before = datetime.utcnow()
        await TokenGuard(test_db, mock_gmail, safety_margin_seconds=60).ensure_valid(account)

        assert decrypt_token(account.access_token) == "fresh"
        assert decrypt_token(account.refresh_token) == "refresh-token"
        expected = before + timedelta(seconds=3600 - 60)
        assert abs((account.token_expires_at - expected).total_seconds()) < 5

    @pytest.mark.asyncio
    async def test_refresh_failure_returns_account_unchanged(self, test_db, account, mock_gmail):
        expired_at = datetime.utcnow() - timedelta(seconds=1)
        account.token_expires_at = expired_at
        await test_db.commit()
        mock_gmail.refresh_access_token.side_effect = GmailTokenRefreshError("invalid_grant")

        result = await TokenGuard(test_db, mock_gmail).ensure_valid(account)

        assert result is account
        assert decrypt_token(account.access_token) == "access-token"
        assert account.token_expires_at == expired_at
