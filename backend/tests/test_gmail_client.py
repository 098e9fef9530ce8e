"""
Tests for the Gmail API facade with a mocked discovery service.
"""

from unittest.mock import MagicMock

import httplib2
import pytest
from googleapiclient.errors import HttpError

from gmail_client import (
    GmailAPIError,
    GmailAuthError,
    GmailClient,
    GmailRateLimitError,
    GmailTransportError,
    classify_http_error,
)


def http_error(status: int, content: bytes = b"{}") -> HttpError:
    return HttpError(resp=httplib2.Response({"status": status}), content=content)


@pytest.fixture
def mock_gmail_service() -> MagicMock:
    """Mock Gmail discovery service."""
    return MagicMock()


@pytest.fixture
def gmail_client(mock_gmail_service) -> GmailClient:
    return GmailClient(service_factory=lambda account: mock_gmail_service)


class TestErrorClassification:
    """Tests for HttpError mapping."""

    def test_401_is_auth_error(self):
        error = classify_http_error(http_error(401), "list messages")
        assert isinstance(error, GmailAuthError)
        assert error.status == 401

    def test_rate_limits(self):
        assert isinstance(classify_http_error(http_error(429), "x"), GmailRateLimitError)
        body = b'{"error": {"errors": [{"reason": "rateLimitExceeded"}]}}'
        assert isinstance(classify_http_error(http_error(403, body), "x"), GmailRateLimitError)

    def test_other_status_keeps_body(self):
        error = classify_http_error(http_error(400, b'{"error": "bad"}'), "x")
        assert type(error) is GmailAPIError
        assert error.body == {"error": "bad"}


class TestGmailClient:
    """Tests for the individual API calls."""

    @pytest.mark.asyncio
    async def test_list_inbox_follows_pages(self, gmail_client, mock_gmail_service, account):
        messages = mock_gmail_service.users.return_value.messages.return_value
        messages.list.return_value.execute.side_effect = [
            {"messages": [{"id": "a"}, {"id": "b"}], "nextPageToken": "p2"},
            {"messages": [{"id": "c"}]},
        ]

        ids = await gmail_client.list_inbox_message_ids(account, max_results=10)

        assert ids == ["a", "b", "c"]
        second_call = messages.list.call_args_list[-1].kwargs
        assert second_call["pageToken"] == "p2"
        assert second_call["labelIds"] == ["INBOX"]

    @pytest.mark.asyncio
    async def test_history_404_is_empty(self, gmail_client, mock_gmail_service, account):
        history = mock_gmail_service.users.return_value.history.return_value
        history.list.return_value.execute.side_effect = http_error(404)

        assert await gmail_client.get_history(account, "1") == {"history": []}

    @pytest.mark.asyncio
    async def test_archive_removes_inbox_label(self, gmail_client, mock_gmail_service, account):
        messages = mock_gmail_service.users.return_value.messages.return_value
        messages.modify.return_value.execute.return_value = {"id": "m1"}

        await gmail_client.archive_message(account, "m1")

        messages.modify.assert_called_once_with(userId="me", id="m1", body={"removeLabelIds": ["INBOX"]})

    @pytest.mark.asyncio
    async def test_unauthorized_raises_auth_error(self, gmail_client, mock_gmail_service, account):
        messages = mock_gmail_service.users.return_value.messages.return_value
        messages.get.return_value.execute.side_effect = http_error(401)

        with pytest.raises(GmailAuthError):
            await gmail_client.get_message(account, "m1")

    @pytest.mark.asyncio
    async def test_transport_failure(self, gmail_client, mock_gmail_service, account):
        messages = mock_gmail_service.users.return_value.messages.return_value
        messages.trash.return_value.execute.side_effect = httplib2.ServerNotFoundError("no dns")

        with pytest.raises(GmailTransportError):
            await gmail_client.trash_message(account, "m1")

    @pytest.mark.asyncio
    async def test_watch_targets_inbox(self, gmail_client, mock_gmail_service, account):
        users = mock_gmail_service.users.return_value
        users.watch.return_value.execute.return_value = {"historyId": "42"}

        response = await gmail_client.watch(account, "projects/p/topics/t")

        assert response["historyId"] == "42"
        users.watch.assert_called_once_with(
            userId="me",
            body={"topicName": "projects/p/topics/t", "labelIds": ["INBOX"]},
        )
