"""Tests for survey_mail.smtp_client."""

from __future__ import annotations

import smtplib
from unittest.mock import MagicMock, patch

import pytest

from survey_mail.composer import MessageComposer
from survey_mail.config import SmtpConfig
from survey_mail.errors import TransportError
from survey_mail.smtp_client import AsyncSmtpClient


def _make_mock_smtp() -> MagicMock:
    mock = MagicMock()
    # ``with smtplib.SMTP_SSL(...) as conn`` yields the same object
    mock.__enter__.return_value = mock
    mock.__exit__.return_value = False
    return mock


@pytest.fixture
def composed():
    return MessageComposer("survey@school.test").compose("t1@school.test", "S", "B")


class TestAsyncSmtpClient:
    @pytest.mark.asyncio
    async def test_send_ssl(self, smtp_config: SmtpConfig, composed):
        client = AsyncSmtpClient(smtp_config)
        with patch("survey_mail.smtp_client.smtplib.SMTP_SSL") as MockSSL:
            conn = _make_mock_smtp()
            MockSSL.return_value = conn
            message_id = await client.send(composed)

        assert message_id == composed.message_id
        args, kwargs = MockSSL.call_args
        assert args == ("smtp.test.com", 465)
        assert kwargs["timeout"] == 5.0
        conn.login.assert_called_once_with("mailer", "smtppass")
        conn.send_message.assert_called_once_with(
            composed.message,
            from_addr="survey@school.test",
            to_addrs=["t1@school.test"],
        )

    @pytest.mark.asyncio
    async def test_send_starttls(self, composed):
        config = SmtpConfig(host="smtp.test.com", port=587, use_ssl=False, starttls=True)
        client = AsyncSmtpClient(config)
        with patch("survey_mail.smtp_client.smtplib.SMTP") as MockSMTP:
            conn = _make_mock_smtp()
            MockSMTP.return_value = conn
            await client.send(composed)

        MockSMTP.assert_called_once_with("smtp.test.com", 587, timeout=30.0)
        conn.starttls.assert_called_once()
        # No username configured
        conn.login.assert_not_called()
        conn.send_message.assert_called_once()

    @pytest.mark.asyncio
    async def test_smtp_error_wrapped(self, smtp_config: SmtpConfig, composed):
        client = AsyncSmtpClient(smtp_config)
        with patch("survey_mail.smtp_client.smtplib.SMTP_SSL") as MockSSL:
            conn = _make_mock_smtp()
            conn.login.side_effect = smtplib.SMTPAuthenticationError(535, b"bad credentials")
            MockSSL.return_value = conn
            with pytest.raises(TransportError, match="t1@school.test"):
                await client.send(composed)

    @pytest.mark.asyncio
    async def test_connect_error_wrapped(self, smtp_config: SmtpConfig, composed):
        client = AsyncSmtpClient(smtp_config)
        with patch(
            "survey_mail.smtp_client.smtplib.SMTP_SSL",
            side_effect=ConnectionRefusedError("refused"),
        ):
            with pytest.raises(TransportError):
                await client.send(composed)
