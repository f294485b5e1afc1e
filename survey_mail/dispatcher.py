"""Background dispatch and reminder runs.

A run is submitted to :class:`DispatchQueue` and executed by one of a
fixed number of worker tasks; the caller gets an ``asyncio.Future`` it may
await or ignore.  Inside a run, teachers are processed one after the
other and a failed send never stops the rest of the batch.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from datetime import UTC, datetime
from pathlib import Path

import structlog
from sqlalchemy.exc import SQLAlchemyError

from .composer import ComposedEmail, MessageComposer, render_template
from .config import StorageConfig
from .db import Database, Dispatch, Project, SentEmail, SentKind, Teacher
from .db import queries
from .errors import DispatchQueueFullError, ProjectNotFoundError, TransportError
from .models import RunResult
from .smtp_client import AsyncSmtpClient

logger = structlog.get_logger()

Job = Callable[[], Awaitable[RunResult]]


def _consume_exception(future: asyncio.Future) -> None:
    # Fire-and-forget callers never await; keep asyncio from warning
    if not future.cancelled():
        future.exception()


class DispatchQueue:
    """Bounded work queue drained by ``workers`` tasks."""

    def __init__(self, *, workers: int = 2, maxsize: int = 100) -> None:
        self._workers = workers
        self._queue: asyncio.Queue[tuple[Job, asyncio.Future]] = asyncio.Queue(maxsize=maxsize)
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._worker(n), name=f"dispatch-worker-{n}")
            for n in range(self._workers)
        ]
        logger.info("dispatch_queue_started", workers=self._workers)

    async def stop(self) -> None:
        """Cancel the workers; runs still waiting in the queue are cancelled too."""
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        while not self._queue.empty():
            _, future = self._queue.get_nowait()
            future.cancel()
            self._queue.task_done()
        logger.info("dispatch_queue_stopped")

    def submit(self, job: Job) -> asyncio.Future:
        if not self._tasks:
            raise RuntimeError("DispatchQueue is not started")
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        future.add_done_callback(_consume_exception)
        try:
            self._queue.put_nowait((job, future))
        except asyncio.QueueFull as exc:
            raise DispatchQueueFullError("dispatch queue is full") from exc
        return future

    async def join(self) -> None:
        """Wait until every submitted run has finished."""
        await self._queue.join()

    async def _worker(self, n: int) -> None:
        while True:
            job, future = await self._queue.get()
            try:
                if future.cancelled():
                    continue
                result = await job()
            except asyncio.CancelledError:
                future.cancel()
                raise
            except Exception as exc:
                logger.exception("dispatch_job_failed", worker=n)
                if not future.done():
                    future.set_exception(exc)
            else:
                if not future.done():
                    future.set_result(result)
            finally:
                self._queue.task_done()


class DispatchRunner:
    """Executes dispatch and reminder runs for one sending account."""

    def __init__(
        self,
        db: Database,
        smtp: AsyncSmtpClient,
        composer: MessageComposer,
        storage: StorageConfig,
    ) -> None:
        self._db = db
        self._smtp = smtp
        self._composer = composer
        self._templates_dir = Path(storage.templates_dir)

    async def run_dispatch(
        self, project_id: int, teacher_ids: Sequence[int], target_type: str
    ) -> RunResult:
        with structlog.contextvars.bound_contextvars(project_id=project_id, run_kind=target_type):
            return await self._dispatch(project_id, teacher_ids, target_type)

    async def run_reminders(self, project_id: int, teacher_ids: Sequence[int]) -> RunResult:
        with structlog.contextvars.bound_contextvars(project_id=project_id, run_kind="reminder"):
            return await self._remind(project_id, teacher_ids)

    async def _dispatch(
        self, project_id: int, teacher_ids: Sequence[int], target_type: str
    ) -> RunResult:
        project = await self._load_project(project_id)
        attachment = (
            self._templates_dir / project.excel_template_filename
            if project.excel_template_filename
            else None
        )
        result = RunResult(project_id=project_id, kind=target_type, target_count=len(teacher_ids))
        logger.info("dispatch_run_started", targets=len(teacher_ids))

        for teacher_id in teacher_ids:
            teacher = await self._load_teacher(teacher_id, project_id)
            if teacher is None:
                result.failed_teacher_ids.append(teacher_id)
                continue
            composed = self._composer.compose(
                teacher.email,
                render_template(project.email_subject_template, teacher.name, project.name),
                render_template(project.email_body_template, teacher.name, project.name),
                attachment,
            )
            if await self._send_and_record(project_id, teacher, composed, SentKind.DISPATCH):
                result.sent_count += 1
            else:
                result.failed_teacher_ids.append(teacher_id)

        await self._record_run(result)
        logger.info(
            "dispatch_run_finished",
            sent=result.sent_count,
            targets=result.target_count,
        )
        return result

    async def _remind(self, project_id: int, teacher_ids: Sequence[int]) -> RunResult:
        project = await self._load_project(project_id)
        result = RunResult(project_id=project_id, kind="reminder", target_count=len(teacher_ids))
        logger.info("reminder_run_started", targets=len(teacher_ids))

        for teacher_id in teacher_ids:
            teacher = await self._load_teacher(teacher_id, project_id)
            if teacher is None:
                result.failed_teacher_ids.append(teacher_id)
                continue
            composed = self._composer.compose_reminder(
                teacher.email,
                teacher.name,
                project.name,
                project.email_subject_template,
                project.email_body_template,
            )
            if await self._send_and_record(project_id, teacher, composed, SentKind.REMINDER):
                result.sent_count += 1
            else:
                result.failed_teacher_ids.append(teacher_id)

        await self._record_run(result)
        logger.info(
            "reminder_run_finished",
            sent=result.sent_count,
            targets=result.target_count,
        )
        return result

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _load_project(self, project_id: int) -> Project:
        async with self._db.session() as session:
            project = await queries.get_project(session, project_id)
        if project is None:
            raise ProjectNotFoundError(project_id)
        return project

    async def _load_teacher(self, teacher_id: int, project_id: int) -> Teacher | None:
        async with self._db.session() as session:
            teacher = await queries.get_teacher(session, teacher_id)
        if teacher is None:
            logger.warning("dispatch_teacher_missing", project_id=project_id, teacher_id=teacher_id)
        return teacher

    async def _send_and_record(
        self,
        project_id: int,
        teacher: Teacher,
        composed: ComposedEmail,
        kind: SentKind,
    ) -> bool:
        """Send one message and append it to the ledger.

        Returns False only when the send itself failed; a ledger write
        failure after a successful send is logged and still counts as sent.
        """
        try:
            message_id = await self._smtp.send(composed)
        except TransportError as exc:
            logger.warning(
                "dispatch_send_failed",
                project_id=project_id,
                teacher_id=teacher.id,
                to=teacher.email,
                error=str(exc),
            )
            return False

        try:
            async with self._db.session() as session:
                session.add(
                    SentEmail(
                        project_id=project_id,
                        teacher_id=teacher.id,
                        message_id=message_id,
                        kind=kind.value,
                    )
                )
                if kind is SentKind.DISPATCH:
                    await queries.mark_member_sent(
                        session, project_id, teacher.id, datetime.now(UTC)
                    )
                await session.commit()
        except SQLAlchemyError as exc:
            logger.error(
                "ledger_write_failed",
                project_id=project_id,
                teacher_id=teacher.id,
                message_id=message_id,
                error=str(exc),
            )
        return True

    async def _record_run(self, result: RunResult) -> None:
        try:
            async with self._db.session() as session:
                session.add(
                    Dispatch(
                        project_id=result.project_id,
                        target_type=result.kind,
                        target_count=result.target_count,
                        sent_count=result.sent_count,
                    )
                )
                await session.commit()
        except SQLAlchemyError as exc:
            logger.error("dispatch_record_failed", project_id=result.project_id, error=str(exc))
