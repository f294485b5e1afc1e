"""Async IMAP client wrapping stdlib imaplib with asyncio.to_thread."""

from __future__ import annotations

import asyncio
import imaplib
from dataclasses import dataclass
from types import TracebackType

import structlog

from .config import ImapConfig
from .errors import TransportError

logger = structlog.get_logger()


@dataclass
class FetchedEmail:
    """Raw email data fetched from IMAP."""

    uid: str
    raw_bytes: bytes


class AsyncImapClient:
    """Async-friendly IMAP client.

    All blocking ``imaplib`` operations are wrapped with
    ``asyncio.to_thread()`` to avoid blocking the event loop.  Every fetch
    returns the whole mailbox: deduplication happens downstream on the
    Message-ID.
    """

    def __init__(self, config: ImapConfig) -> None:
        self._config = config
        self._conn: imaplib.IMAP4_SSL | imaplib.IMAP4 | None = None

    async def __aenter__(self) -> AsyncImapClient:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.disconnect()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Connect, login, and select the configured mailbox."""
        try:
            await asyncio.to_thread(self._connect_sync)
        except (imaplib.IMAP4.error, OSError) as exc:
            if self._conn is not None:
                await asyncio.to_thread(self._abort_sync)
                self._conn = None
            raise TransportError(
                f"IMAP connect to {self._config.host}:{self._config.port} failed: {exc}"
            ) from exc
        logger.info(
            "imap_connected",
            host=self._config.host,
            mailbox=self._config.mailbox,
        )

    def _connect_sync(self) -> None:
        timeout = self._config.timeout_seconds
        if self._config.use_ssl:
            self._conn = imaplib.IMAP4_SSL(self._config.host, self._config.port, timeout=timeout)
        else:
            self._conn = imaplib.IMAP4(self._config.host, self._config.port, timeout=timeout)
        self._conn.login(self._config.username, self._config.password.get_secret_value())
        status, data = self._conn.select(self._config.mailbox)
        if status != "OK":
            raise imaplib.IMAP4.error(f"select {self._config.mailbox} failed: {data!r}")

    def _abort_sync(self) -> None:
        """Close the socket of a connection that never finished logging in."""
        assert self._conn is not None
        try:
            self._conn.shutdown()
        except (imaplib.IMAP4.error, OSError):
            pass

    async def disconnect(self) -> None:
        """Close mailbox and logout."""
        if self._conn is not None:
            await asyncio.to_thread(self._disconnect_sync)
            self._conn = None
            logger.info("imap_disconnected")

    def _disconnect_sync(self) -> None:
        assert self._conn is not None
        try:
            self._conn.close()
        except (imaplib.IMAP4.error, OSError):
            pass
        try:
            self._conn.logout()
        except (imaplib.IMAP4.error, OSError):
            pass

    async def is_connected(self) -> bool:
        """Check connection liveness with a NOOP command."""
        if self._conn is None:
            return False
        try:
            status, _ = await asyncio.to_thread(self._conn.noop)
            return status == "OK"
        except (imaplib.IMAP4.error, OSError):
            return False

    # ------------------------------------------------------------------
    # Message retrieval
    # ------------------------------------------------------------------

    async def fetch_all(self) -> list[FetchedEmail]:
        """Fetch every message in the selected mailbox (seen or not)."""
        assert self._conn is not None, "Not connected"
        try:
            return await asyncio.to_thread(self._fetch_all_sync)
        except (imaplib.IMAP4.error, OSError) as exc:
            raise TransportError(f"IMAP fetch failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Synchronous helpers (run in thread)
    # ------------------------------------------------------------------

    def _fetch_all_sync(self) -> list[FetchedEmail]:
        assert self._conn is not None
        status, data = self._conn.uid("SEARCH", None, "ALL")
        if status != "OK":
            raise imaplib.IMAP4.error(f"UID SEARCH failed: {data!r}")
        if not data or not data[0]:
            logger.info("imap_mailbox_empty", mailbox=self._config.mailbox)
            return []

        results: list[FetchedEmail] = []
        for uid_bytes in data[0].split():
            uid = uid_bytes.decode()
            status, msg_data = self._conn.uid("FETCH", uid, "(RFC822)")
            if status != "OK" or not msg_data or not isinstance(msg_data[0], tuple):
                logger.warning("imap_fetch_skipped", uid=uid, status=status)
                continue

            raw_bytes: bytes = msg_data[0][1]
            results.append(FetchedEmail(uid=uid, raw_bytes=raw_bytes))

        logger.debug("imap_fetch_complete", fetched=len(results))
        return results
