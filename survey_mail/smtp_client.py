"""Async SMTP client wrapping stdlib smtplib with asyncio.to_thread."""

from __future__ import annotations

import asyncio
import smtplib
import ssl

import structlog

from .composer import ComposedEmail
from .config import SmtpConfig
from .errors import TransportError

logger = structlog.get_logger()


class AsyncSmtpClient:
    """Send one composed message per authenticated, encrypted session.

    Failures are raised as :class:`TransportError` and never retried here;
    the caller decides whether a batch continues.
    """

    def __init__(self, config: SmtpConfig) -> None:
        self._config = config

    async def send(self, composed: ComposedEmail) -> str:
        """Transmit *composed* to its single recipient. Returns the message id."""
        try:
            await asyncio.to_thread(self._send_sync, composed)
        except (smtplib.SMTPException, OSError) as exc:
            logger.warning(
                "smtp_send_failed",
                to=composed.to,
                host=self._config.host,
                error=str(exc),
            )
            raise TransportError(f"SMTP send to {composed.to} failed: {exc}") from exc

        logger.info("smtp_sent", to=composed.to, message_id=composed.message_id)
        return composed.message_id

    def _open(self) -> smtplib.SMTP:
        timeout = self._config.timeout_seconds
        context = ssl.create_default_context()
        if self._config.use_ssl:
            return smtplib.SMTP_SSL(
                self._config.host, self._config.port, timeout=timeout, context=context
            )
        conn = smtplib.SMTP(self._config.host, self._config.port, timeout=timeout)
        if self._config.starttls:
            conn.starttls(context=context)
        return conn

    def _send_sync(self, composed: ComposedEmail) -> None:
        with self._open() as conn:
            if self._config.username:
                conn.login(self._config.username, self._config.password.get_secret_value())
            conn.send_message(
                composed.message,
                from_addr=self._config.sender_address,
                to_addrs=[composed.to],
            )
