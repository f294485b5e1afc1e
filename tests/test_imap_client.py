"""Tests for survey_mail.imap_client."""

from __future__ import annotations

import imaplib
from unittest.mock import MagicMock, patch

import pytest

from survey_mail.config import ImapConfig
from survey_mail.errors import TransportError
from survey_mail.imap_client import AsyncImapClient, FetchedEmail


@pytest.fixture
def client(imap_config: ImapConfig) -> AsyncImapClient:
    return AsyncImapClient(imap_config)


def _make_mock_imap(
    *,
    search_uids: list[bytes] | None = None,
    fetch_data: dict[bytes, bytes] | None = None,
    search_status: str = "OK",
) -> MagicMock:
    """Create a mock imaplib.IMAP4_SSL with programmed responses."""
    mock = MagicMock()
    mock.login.return_value = ("OK", [b"Logged in"])
    mock.select.return_value = ("OK", [b"1"])
    mock.close.return_value = ("OK", [b"Closed"])
    mock.logout.return_value = ("BYE", [b"Bye"])
    mock.noop.return_value = ("OK", [b""])

    uid_data = b" ".join(search_uids) if search_uids else b""
    mock.uid.side_effect = _make_uid_handler(uid_data, fetch_data or {}, search_status)
    return mock


def _make_uid_handler(search_data: bytes, fetch_data: dict[bytes, bytes], search_status: str):
    """Build a side_effect function for mock.uid() that handles SEARCH and FETCH."""

    def handler(command: str, *args):
        if command == "SEARCH":
            return (search_status, [search_data])
        elif command == "FETCH":
            uid = args[0].encode() if isinstance(args[0], str) else args[0]
            raw = fetch_data.get(uid, b"")
            if raw:
                return ("OK", [(b"1 (RFC822 {%d})" % len(raw), raw)])
            return ("OK", [None])
        return ("OK", [b""])

    return handler


class TestAsyncImapClientConnect:
    @pytest.mark.asyncio
    async def test_connect_ssl(self, client: AsyncImapClient):
        with patch("survey_mail.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            mock_conn = _make_mock_imap()
            MockSSL.return_value = mock_conn
            await client.connect()
            MockSSL.assert_called_once_with("imap.test.com", 993, timeout=5.0)
            mock_conn.login.assert_called_once_with("testuser", "testpass")
            mock_conn.select.assert_called_once_with("INBOX")

    @pytest.mark.asyncio
    async def test_connect_non_ssl(self):
        config = ImapConfig(host="imap.test.com", port=143, use_ssl=False, username="u", password="p")
        client = AsyncImapClient(config)
        with patch("survey_mail.imap_client.imaplib.IMAP4") as MockIMAP:
            mock_conn = _make_mock_imap()
            MockIMAP.return_value = mock_conn
            await client.connect()
            MockIMAP.assert_called_once_with("imap.test.com", 143, timeout=30.0)

    @pytest.mark.asyncio
    async def test_login_failure_raises_transport_error(self, client: AsyncImapClient):
        with patch("survey_mail.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            mock_conn = _make_mock_imap()
            mock_conn.login.side_effect = imaplib.IMAP4.error("LOGIN failed")
            MockSSL.return_value = mock_conn
            with pytest.raises(TransportError, match="LOGIN failed"):
                await client.connect()
            mock_conn.shutdown.assert_called_once()
        assert await client.is_connected() is False

    @pytest.mark.asyncio
    async def test_select_failure_raises_transport_error(self, client: AsyncImapClient):
        with patch("survey_mail.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            mock_conn = _make_mock_imap()
            mock_conn.select.return_value = ("NO", [b"no such mailbox"])
            MockSSL.return_value = mock_conn
            with pytest.raises(TransportError):
                await client.connect()
            mock_conn.shutdown.assert_called_once()

    @pytest.mark.asyncio
    async def test_socket_error_raises_transport_error(self, client: AsyncImapClient):
        with patch(
            "survey_mail.imap_client.imaplib.IMAP4_SSL",
            side_effect=TimeoutError("timed out"),
        ):
            with pytest.raises(TransportError):
                await client.connect()

    @pytest.mark.asyncio
    async def test_shutdown_error_after_failed_login_is_tolerated(self, client: AsyncImapClient):
        with patch("survey_mail.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            mock_conn = _make_mock_imap()
            mock_conn.login.side_effect = imaplib.IMAP4.error("LOGIN failed")
            mock_conn.shutdown.side_effect = OSError("already closed")
            MockSSL.return_value = mock_conn
            with pytest.raises(TransportError, match="LOGIN failed"):
                await client.connect()
        assert await client.is_connected() is False


class TestAsyncImapClientLifecycle:
    @pytest.mark.asyncio
    async def test_context_manager(self, client: AsyncImapClient):
        with patch("survey_mail.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            mock_conn = _make_mock_imap()
            MockSSL.return_value = mock_conn
            async with client:
                assert await client.is_connected() is True
            mock_conn.close.assert_called_once()
            mock_conn.logout.assert_called_once()
        assert await client.is_connected() is False

    @pytest.mark.asyncio
    async def test_disconnect_tolerates_errors(self, client: AsyncImapClient):
        with patch("survey_mail.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            mock_conn = _make_mock_imap()
            mock_conn.close.side_effect = imaplib.IMAP4.error("already closed")
            mock_conn.logout.side_effect = OSError("broken pipe")
            MockSSL.return_value = mock_conn
            await client.connect()
            await client.disconnect()
        assert await client.is_connected() is False

    @pytest.mark.asyncio
    async def test_disconnect_when_not_connected(self, client: AsyncImapClient):
        await client.disconnect()


class TestAsyncImapClientFetch:
    @pytest.mark.asyncio
    async def test_fetch_all(self, client: AsyncImapClient):
        with patch("survey_mail.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            mock_conn = _make_mock_imap(
                search_uids=[b"101", b"102"],
                fetch_data={b"101": b"raw-one", b"102": b"raw-two"},
            )
            MockSSL.return_value = mock_conn
            await client.connect()
            emails = await client.fetch_all()

        assert emails == [
            FetchedEmail(uid="101", raw_bytes=b"raw-one"),
            FetchedEmail(uid="102", raw_bytes=b"raw-two"),
        ]
        mock_conn.uid.assert_any_call("SEARCH", None, "ALL")

    @pytest.mark.asyncio
    async def test_fetch_empty_mailbox(self, client: AsyncImapClient):
        with patch("survey_mail.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            MockSSL.return_value = _make_mock_imap()
            await client.connect()
            assert await client.fetch_all() == []

    @pytest.mark.asyncio
    async def test_failed_fetch_skips_message(self, client: AsyncImapClient):
        with patch("survey_mail.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            MockSSL.return_value = _make_mock_imap(
                search_uids=[b"1", b"2"],
                fetch_data={b"2": b"raw-two"},
            )
            await client.connect()
            emails = await client.fetch_all()

        assert [e.uid for e in emails] == ["2"]

    @pytest.mark.asyncio
    async def test_search_failure_raises_transport_error(self, client: AsyncImapClient):
        with patch("survey_mail.imap_client.imaplib.IMAP4_SSL") as MockSSL:
            MockSSL.return_value = _make_mock_imap(search_status="NO")
            await client.connect()
            with pytest.raises(TransportError):
                await client.fetch_all()
