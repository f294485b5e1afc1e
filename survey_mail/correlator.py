"""Reply correlation: match an inbound message to the project and teacher it answers.

Precedence for every message:

1. idempotency gate: a stored reply with the same Message-ID is skipped
   before anything else happens;
2. thread match: ``In-Reply-To`` (then ``References``, newest first)
   looked up in the sent ledger;
3. sender fallback: the sender's teacher record and the *active*
   projects it is a member of; exactly one candidate resolves, zero or
   several drop the message.

Only resolved messages produce side effects: a ``Reply`` row, stored
attachments, and the membership moving to ``replied``.  The steps are
independent writes, so a crash between them can leave a stored reply with
a stale membership; :meth:`ReplyCorrelator.reconcile_project` repairs that
from the stored replies.
"""

from __future__ import annotations

import enum
import hashlib
from dataclasses import dataclass, field

import structlog
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from .attachment_store import AttachmentStore
from .db import Attachment, Database, MemberStatus, Reply
from .db import queries
from .errors import PersistenceError
from .parser import ParsedAttachment, ParsedEmail

logger = structlog.get_logger()

SYNTHETIC_DOMAIN = "survey-mail.local"


class CorrelationStatus(str, enum.Enum):
    RESOLVED = "resolved"
    UNRESOLVED = "unresolved"
    AMBIGUOUS = "ambiguous"


class ProcessOutcome(str, enum.Enum):
    """What happened to one inbound message."""

    STORED = "stored"
    PARTIAL = "partial"
    DUPLICATE = "duplicate"
    UNRESOLVED = "unresolved"
    AMBIGUOUS = "ambiguous"
    FAILED = "failed"


@dataclass
class Correlation:
    status: CorrelationStatus
    project_id: int | None = None
    teacher_id: int | None = None
    method: str | None = None
    candidates: list[int] = field(default_factory=list)
    reason: str = ""


@dataclass
class ProcessResult:
    outcome: ProcessOutcome
    message_id: str
    correlation: Correlation | None = None
    reply_id: int | None = None
    attachments_saved: int = 0
    attachments_failed: int = 0


def effective_message_id(parsed: ParsedEmail) -> str:
    """The message's Message-ID, or a stable digest of its headers and body."""
    if parsed.message_id:
        return parsed.message_id
    digest = hashlib.sha256()
    for key, value in sorted(parsed.headers.items()):
        digest.update(f"{key}:{value}\n".encode("utf-8", "replace"))
    digest.update(parsed.body_text.encode("utf-8", "replace"))
    return f"<{digest.hexdigest()[:32]}@{SYNTHETIC_DOMAIN}>"


def thread_ids(parsed: ParsedEmail) -> list[str]:
    """Ids to try against the ledger: In-Reply-To, then References newest first."""
    ids: list[str] = []
    if parsed.in_reply_to:
        ids.append(parsed.in_reply_to)
    for ref in reversed(parsed.references):
        if ref not in ids:
            ids.append(ref)
    return ids


class ReplyCorrelator:
    """Resolve inbound replies and apply their side effects."""

    def __init__(self, db: Database, store: AttachmentStore) -> None:
        self._db = db
        self._store = store

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def resolve(self, parsed: ParsedEmail, *, owner_id: int | None = None) -> Correlation:
        async with self._db.session() as session:
            return await self._resolve(session, parsed, owner_id)

    async def _resolve(
        self, session: AsyncSession, parsed: ParsedEmail, owner_id: int | None
    ) -> Correlation:
        for ref in thread_ids(parsed):
            sent = await queries.find_sent_email(session, ref)
            if sent is not None:
                return Correlation(
                    status=CorrelationStatus.RESOLVED,
                    project_id=sent.project_id,
                    teacher_id=sent.teacher_id,
                    method="thread",
                )

        teacher = await queries.find_teacher_by_email(session, parsed.from_address)
        if teacher is None:
            return Correlation(status=CorrelationStatus.UNRESOLVED, reason="unknown_sender")

        candidates = await queries.active_project_ids_for_teacher(
            session, teacher.id, owner_id=owner_id
        )
        if len(candidates) == 1:
            return Correlation(
                status=CorrelationStatus.RESOLVED,
                project_id=candidates[0],
                teacher_id=teacher.id,
                method="sender",
                candidates=candidates,
            )
        if not candidates:
            return Correlation(
                status=CorrelationStatus.UNRESOLVED,
                teacher_id=teacher.id,
                reason="no_active_project",
            )
        return Correlation(
            status=CorrelationStatus.AMBIGUOUS,
            teacher_id=teacher.id,
            candidates=candidates,
            reason="multiple_active_projects",
        )

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def process(self, parsed: ParsedEmail, *, owner_id: int | None = None) -> ProcessResult:
        message_id = effective_message_id(parsed)
        log = logger.bind(message_id=message_id, sender=parsed.from_address)

        async with self._db.session() as session:
            if await queries.reply_exists(session, message_id):
                log.debug("reply_duplicate_skipped")
                return ProcessResult(outcome=ProcessOutcome.DUPLICATE, message_id=message_id)
            correlation = await self._resolve(session, parsed, owner_id)

        if correlation.status is CorrelationStatus.AMBIGUOUS:
            log.warning(
                "reply_ambiguous",
                teacher_id=correlation.teacher_id,
                candidates=correlation.candidates,
            )
            return ProcessResult(
                outcome=ProcessOutcome.AMBIGUOUS, message_id=message_id, correlation=correlation
            )
        if correlation.status is not CorrelationStatus.RESOLVED or correlation.project_id is None:
            log.info(
                "reply_unresolved",
                reason=correlation.reason or "no_project",
                teacher_id=correlation.teacher_id,
            )
            return ProcessResult(
                outcome=ProcessOutcome.UNRESOLVED, message_id=message_id, correlation=correlation
            )

        log = log.bind(
            project_id=correlation.project_id,
            teacher_id=correlation.teacher_id,
            method=correlation.method,
        )

        result = ProcessResult(
            outcome=ProcessOutcome.STORED, message_id=message_id, correlation=correlation
        )

        try:
            result.reply_id = await self._insert_reply(parsed, message_id, correlation)
        except IntegrityError:
            # Another pass stored the same Message-ID in the meantime
            log.info("reply_duplicate_skipped")
            result.outcome = ProcessOutcome.DUPLICATE
            return result
        except SQLAlchemyError as exc:
            log.error("reply_insert_failed", error=str(exc))
            result.outcome = ProcessOutcome.FAILED
            return result

        for attachment in parsed.attachments:
            if await self._persist_attachment(result.reply_id, correlation, attachment, log):
                result.attachments_saved += 1
            else:
                result.attachments_failed += 1

        if correlation.teacher_id is not None:
            try:
                await self._mark_replied(correlation, parsed)
            except SQLAlchemyError as exc:
                log.error(
                    "membership_update_partial",
                    reply_id=result.reply_id,
                    error=str(exc),
                )
                result.outcome = ProcessOutcome.PARTIAL
                return result

        log.info(
            "reply_stored",
            reply_id=result.reply_id,
            attachments=result.attachments_saved,
            attachments_failed=result.attachments_failed,
        )
        return result

    async def _insert_reply(
        self, parsed: ParsedEmail, message_id: str, correlation: Correlation
    ) -> int:
        async with self._db.session() as session:
            reply = Reply(
                project_id=correlation.project_id,
                teacher_id=correlation.teacher_id,
                from_email=parsed.from_address,
                subject=parsed.subject,
                message_id=message_id,
                in_reply_to=parsed.in_reply_to,
                received_at=parsed.received_at,
                raw_headers=parsed.headers,
                raw_body=parsed.body_text,
            )
            session.add(reply)
            await session.commit()
            return reply.id

    async def _persist_attachment(
        self, reply_id: int, correlation: Correlation, attachment: ParsedAttachment, log
    ) -> bool:
        try:
            stored = await self._store.save(correlation.project_id, attachment)
        except PersistenceError:
            log.error("attachment_abandoned", reply_id=reply_id, filename=attachment.filename)
            return False

        try:
            async with self._db.session() as session:
                session.add(
                    Attachment(
                        reply_id=reply_id,
                        project_id=correlation.project_id,
                        teacher_id=correlation.teacher_id,
                        original_filename=stored.original_filename,
                        stored_path=str(stored.path),
                        content_type=stored.content_type,
                        file_size=stored.size,
                    )
                )
                await session.commit()
        except SQLAlchemyError as exc:
            log.error(
                "attachment_record_failed",
                reply_id=reply_id,
                stored_path=str(stored.path),
                error=str(exc),
            )
            return False
        return True

    async def _mark_replied(self, correlation: Correlation, parsed: ParsedEmail) -> None:
        async with self._db.session() as session:
            updated = await queries.mark_member_replied(
                session, correlation.project_id, correlation.teacher_id, parsed.received_at
            )
            await session.commit()
        if not updated:
            logger.warning(
                "membership_missing",
                project_id=correlation.project_id,
                teacher_id=correlation.teacher_id,
            )

    # ------------------------------------------------------------------
    # Compensation
    # ------------------------------------------------------------------

    async def recompute_member_status(self, project_id: int, teacher_id: int) -> bool:
        """Restore ``replied`` from stored replies. Returns True if the row changed."""
        async with self._db.session() as session:
            latest = await queries.latest_reply_at(session, project_id, teacher_id)
            if latest is None:
                return False
            member = await queries.get_member(session, project_id, teacher_id)
            if member is None:
                return False
            if member.current_status == MemberStatus.REPLIED.value and member.last_reply_at:
                return False
            member.current_status = MemberStatus.REPLIED.value
            member.last_reply_at = latest
            await session.commit()
        logger.info("membership_reconciled", project_id=project_id, teacher_id=teacher_id)
        return True

    async def reconcile_project(self, project_id: int) -> int:
        """Rescan every replying teacher of a project. Returns rows repaired."""
        async with self._db.session() as session:
            teacher_ids = await queries.replied_teacher_ids(session, project_id)
        repaired = 0
        for teacher_id in teacher_ids:
            if await self.recompute_member_status(project_id, teacher_id):
                repaired += 1
        return repaired
