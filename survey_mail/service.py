"""SurveyMailService: the engine facade used by the HTTP layer, the CLI and the poller."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Sequence
from datetime import UTC, datetime
from pathlib import Path
from types import TracebackType
from typing import Any

import structlog
from sqlalchemy.exc import SQLAlchemyError

from .aggregator import AggregationResult, SpreadsheetAggregator
from .attachment_store import AttachmentStore
from .composer import MessageComposer
from .config import ImapConfig, MailAccount, Settings, SmtpConfig
from .correlator import ReplyCorrelator
from .db import Database
from .db import queries
from .dispatcher import DispatchQueue, DispatchRunner
from .errors import IngestionInProgressError, ParseError, ProjectNotFoundError
from .imap_client import AsyncImapClient
from .models import IngestionReport
from .parser import MimeParser
from .smtp_client import AsyncSmtpClient

logger = structlog.get_logger()

TARGET_PENDING = "pending_members"
TARGET_SELECTED = "selected"


class SurveyMailService:
    """Dispatch, reminders, reply ingestion and aggregation behind one object.

    The service owns the background dispatch queue, so it must be started
    before :meth:`dispatch` or :meth:`send_reminders` are called::

        async with SurveyMailService(settings, db) as service:
            await service.dispatch(project_id)
            await service.last_run

    ``smtp_factory`` and ``imap_factory`` build a transport client from a
    config object; tests pass fakes here.
    """

    def __init__(
        self,
        settings: Settings,
        db: Database,
        *,
        smtp_factory: Callable[[SmtpConfig], AsyncSmtpClient] | None = None,
        imap_factory: Callable[[ImapConfig], AsyncImapClient] | None = None,
    ) -> None:
        self.settings = settings
        self.db = db
        self._smtp_factory = smtp_factory or AsyncSmtpClient
        self._imap_factory = imap_factory or AsyncImapClient

        self._parser = MimeParser()
        self._store = AttachmentStore(settings.storage)
        self._correlator = ReplyCorrelator(db, self._store)
        self._aggregator = SpreadsheetAggregator(db, settings.storage)
        self._queue = DispatchQueue(
            workers=settings.dispatch_workers,
            maxsize=settings.dispatch_queue_size,
        )
        self._ingest_locks: dict[str, asyncio.Lock] = {}

        self.last_run: asyncio.Future | None = None
        self.last_ingestion: IngestionReport | None = None
        self.start_time: float = time.monotonic()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self.start_time = time.monotonic()
        await self._queue.start()

    async def stop(self) -> None:
        await self._queue.stop()

    async def __aenter__(self) -> SurveyMailService:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def dispatch(
        self,
        project_id: int,
        teacher_ids: Sequence[int] | None = None,
        *,
        account: MailAccount | None = None,
    ) -> int:
        """Queue a dispatch run and return the number of targets.

        Without ``teacher_ids`` every member that was never sent to is
        targeted.  Returns immediately; ``last_run`` holds the run's future.
        """
        async with self.db.session() as session:
            if await queries.get_project(session, project_id) is None:
                raise ProjectNotFoundError(project_id)
            if teacher_ids:
                targets = list(dict.fromkeys(teacher_ids))
                target_type = TARGET_SELECTED
            else:
                targets = await queries.unsent_member_ids(session, project_id)
                target_type = TARGET_PENDING

        if not targets:
            logger.info("dispatch_nothing_to_send", project_id=project_id)
            return 0

        runner = self._runner(account)
        self.last_run = self._queue.submit(
            lambda: runner.run_dispatch(project_id, targets, target_type)
        )
        logger.info(
            "dispatch_queued",
            project_id=project_id,
            targets=len(targets),
            target_type=target_type,
        )
        return len(targets)

    async def send_reminders(
        self,
        project_id: int,
        teacher_ids: Sequence[int] | None = None,
        *,
        account: MailAccount | None = None,
    ) -> int:
        """Queue a reminder run for members that have not replied."""
        async with self.db.session() as session:
            if await queries.get_project(session, project_id) is None:
                raise ProjectNotFoundError(project_id)
            targets = await queries.awaiting_reply_member_ids(session, project_id, teacher_ids)

        if not targets:
            logger.info("reminder_nothing_to_send", project_id=project_id)
            return 0

        runner = self._runner(account)
        self.last_run = self._queue.submit(lambda: runner.run_reminders(project_id, targets))
        logger.info("reminder_queued", project_id=project_id, targets=len(targets))
        return len(targets)

    def _runner(self, account: MailAccount | None) -> DispatchRunner:
        account = account or self.settings.default_account()
        return DispatchRunner(
            self.db,
            self._smtp_factory(account.smtp),
            MessageComposer(account.smtp.sender_address),
            self.settings.storage,
        )

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def ingest_replies(self, account: MailAccount | None = None) -> IngestionReport:
        """Run one full ingestion pass over a mailbox.

        Raises :class:`TransportError` when the mailbox cannot be reached and
        :class:`IngestionInProgressError` when a pass for the same mailbox is
        already running.  Per-message failures are counted, not raised.
        """
        account = account or self.settings.default_account()
        key = account.mailbox_key
        lock = self._ingest_locks.setdefault(key, asyncio.Lock())
        if lock.locked():
            raise IngestionInProgressError(key)

        with structlog.contextvars.bound_contextvars(mailbox=key):
            async with lock:
                report = IngestionReport(mailbox=key)
                logger.info("ingestion_pass_started")

                async with self._imap_factory(account.imap) as client:
                    fetched = await client.fetch_all()
                report.fetched = len(fetched)

                for item in fetched:
                    try:
                        parsed = self._parser.parse(item.raw_bytes)
                    except ParseError as exc:
                        logger.warning("reply_parse_failed", uid=item.uid, error=str(exc))
                        report.parse_failed += 1
                        continue

                    try:
                        result = await self._correlator.process(parsed, owner_id=account.owner_id)
                    except SQLAlchemyError as exc:
                        logger.error("reply_processing_failed", uid=item.uid, error=str(exc))
                        report.failed += 1
                        continue
                    report.record(result.outcome.value)

                report.finished_at = datetime.now(UTC)
                self.last_ingestion = report
                logger.info(
                    "ingestion_pass_finished",
                    **report.model_dump(exclude={"mailbox", "started_at", "finished_at"}),
                )
                return report

    # ------------------------------------------------------------------
    # Aggregation and maintenance
    # ------------------------------------------------------------------

    async def aggregate(self, project_id: int) -> AggregationResult:
        return await self._aggregator.aggregate(project_id)

    def aggregated_file_path(self, project_id: int) -> Path:
        return self._aggregator.aggregated_file_path(project_id)

    async def reconcile(self, project_id: int) -> int:
        """Repair memberships left stale by a partially applied reply."""
        repaired = await self._correlator.reconcile_project(project_id)
        logger.info("reconcile_finished", project_id=project_id, repaired=repaired)
        return repaired

    async def health_check(self) -> dict[str, Any]:
        details: dict[str, Any] = {
            "dispatch_workers_running": self._queue.running,
            "dispatch_queue_pending": self._queue.pending,
        }
        if self.last_ingestion is not None:
            details["last_ingestion"] = self.last_ingestion.model_dump(mode="json")
        return details
