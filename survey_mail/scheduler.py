"""IngestionScheduler: polls the mailbox on an interval and serves health probes."""

from __future__ import annotations

import asyncio
import time
from typing import Any

import structlog
import uvicorn

from .config import Settings
from .errors import IngestionInProgressError, TransportError
from .health import create_health_app
from .models import IngestionReport, ServiceStatus
from .service import SurveyMailService
from .shutdown import install_signal_handlers

logger = structlog.get_logger()


class IngestionScheduler:
    """Long-running poller around :meth:`SurveyMailService.ingest_replies`.

    ``run()`` starts the following concurrently via
    :class:`asyncio.TaskGroup`:

    * the poll loop (one ingestion pass per interval)
    * the FastAPI health server

    A failed pass marks the poller ``degraded``; the next clean pass
    returns it to ``running``.
    """

    name = "survey-mail-poller"

    def __init__(self, service: SurveyMailService, settings: Settings) -> None:
        self.service = service
        self.settings = settings
        self.status: ServiceStatus = ServiceStatus.STARTING
        self.start_time: float = time.monotonic()
        self.last_report: IngestionReport | None = None
        self.last_error: str | None = None
        self._shutdown_event = asyncio.Event()

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    # ------------------------------------------------------------------
    # Poll loop
    # ------------------------------------------------------------------

    async def run_once(self) -> IngestionReport | None:
        """One ingestion pass. Returns None when the pass could not run."""
        try:
            report = await self.service.ingest_replies()
        except (TransportError, IngestionInProgressError) as exc:
            self.status = ServiceStatus.DEGRADED
            self.last_error = str(exc)
            logger.warning("ingestion_pass_failed", error=str(exc))
            return None

        self.status = ServiceStatus.RUNNING
        self.last_report = report
        self.last_error = None
        return report

    async def _run_poll_loop(self) -> None:
        interval = self.settings.imap.poll_interval_seconds
        logger.info("poll_loop_started", interval_seconds=interval)
        self.status = ServiceStatus.RUNNING

        try:
            while not self._shutdown_event.is_set():
                try:
                    await self.run_once()
                except Exception:
                    self.status = ServiceStatus.DEGRADED
                    logger.exception("ingestion_pass_error")

                try:
                    await asyncio.wait_for(self._shutdown_event.wait(), timeout=interval)
                except TimeoutError:
                    continue
        finally:
            logger.info("poll_loop_stopped")

    # ------------------------------------------------------------------
    # Health server
    # ------------------------------------------------------------------

    async def _run_health_server(self) -> None:
        """Start the FastAPI health server and shut it down on signal."""
        app = create_health_app(self)
        config = uvicorn.Config(
            app,
            host="0.0.0.0",
            port=self.settings.health_port,
            log_level="warning",
        )
        server = uvicorn.Server(config)

        # Run until the shutdown event fires
        serve_task = asyncio.create_task(server.serve())
        await self._shutdown_event.wait()
        server.should_exit = True
        await serve_task

    async def health_check(self) -> dict[str, Any]:
        details = await self.service.health_check()
        details["poll_interval_seconds"] = self.settings.imap.poll_interval_seconds
        if self.last_error is not None:
            details["last_error"] = self.last_error
        return details

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Poll and serve health probes until SIGTERM/SIGINT.

        Called as ``asyncio.run(scheduler.run())``; logging is expected to
        be configured already.
        """
        remove_signal_handlers = install_signal_handlers(self._shutdown_event)
        self.start_time = time.monotonic()
        logger.info("poller_starting", mailbox=self.settings.default_account().mailbox_key)

        await self.service.start()
        try:
            async with asyncio.TaskGroup() as tg:
                tg.create_task(self._run_poll_loop())
                tg.create_task(self._run_health_server())
        except* Exception:
            logger.exception("poller_task_group_error")
        finally:
            self.status = ServiceStatus.STOPPING
            await self.service.stop()
            self.status = ServiceStatus.STOPPED
            remove_signal_handlers()
            logger.info("poller_stopped")
