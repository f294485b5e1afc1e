"""Shared test fixtures for the survey-mail test suite."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from email import encoders
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from pathlib import Path

import openpyxl
import pytest

from survey_mail.composer import ComposedEmail
from survey_mail.config import ImapConfig, Settings, SmtpConfig, StorageConfig
from survey_mail.db import (
    Attachment,
    Database,
    MemberStatus,
    Project,
    ProjectMember,
    Reply,
    SentEmail,
    Teacher,
)
from survey_mail.errors import TransportError
from survey_mail.imap_client import FetchedEmail

XLSX_TYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"


@pytest.fixture
def smtp_config() -> SmtpConfig:
    return SmtpConfig(
        host="smtp.test.com",
        port=465,
        use_ssl=True,
        username="mailer",
        password="smtppass",
        sender_address="survey@school.test",
        timeout_seconds=5.0,
    )


@pytest.fixture
def imap_config() -> ImapConfig:
    return ImapConfig(
        host="imap.test.com",
        port=993,
        use_ssl=True,
        username="testuser",
        password="testpass",
        mailbox="INBOX",
        timeout_seconds=5.0,
        poll_interval_seconds=1.0,
    )


@pytest.fixture
def storage_config(tmp_path: Path) -> StorageConfig:
    return StorageConfig(
        replies_dir=tmp_path / "replies",
        aggregated_dir=tmp_path / "aggregated",
        templates_dir=tmp_path / "templates",
    )


@pytest.fixture
def settings(
    tmp_path: Path,
    smtp_config: SmtpConfig,
    imap_config: ImapConfig,
    storage_config: StorageConfig,
) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        dispatch_workers=1,
        health_port=18080,
        log_json=False,
        smtp=smtp_config,
        imap=imap_config,
        storage=storage_config,
    )


@pytest.fixture
async def db(settings: Settings):
    database = Database(settings.database_url)
    await database.create_all()
    yield database
    await database.close()


# ------------------------------------------------------------------
# Seed helpers
# ------------------------------------------------------------------


async def _add(db: Database, *rows) -> None:
    async with db.session() as session:
        session.add_all(rows)
        await session.commit()


async def _seed_project(
    db: Database,
    project_id: int,
    *,
    name: str | None = None,
    status: str = "active",
    created_by: int | None = 1,
    subject: str = "Survey for {{teacher_name}}",
    body: str = "Dear {{teacher_name}}, please fill in {{project_name}}.",
    template: str | None = None,
) -> None:
    await _add(
        db,
        Project(
            id=project_id,
            code=f"P{project_id}",
            name=name or f"Project {project_id}",
            status=status,
            email_subject_template=subject,
            email_body_template=body,
            excel_template_filename=template,
            created_by=created_by,
        ),
    )


async def _seed_teacher(
    db: Database, teacher_id: int, *, name: str | None = None, email: str | None = None
) -> None:
    await _add(
        db,
        Teacher(
            id=teacher_id,
            name=name or f"Teacher {teacher_id}",
            email=email or f"teacher{teacher_id}@school.test",
        ),
    )


async def _seed_member(
    db: Database,
    project_id: int,
    teacher_id: int,
    *,
    status: MemberStatus = MemberStatus.PENDING,
    sent: bool = False,
) -> None:
    await _add(
        db,
        ProjectMember(
            project_id=project_id,
            teacher_id=teacher_id,
            current_status=status.value,
            sent_at=datetime.now(UTC) if sent else None,
        ),
    )


async def _seed_sent(db: Database, project_id: int, teacher_id: int, message_id: str) -> None:
    await _add(db, SentEmail(project_id=project_id, teacher_id=teacher_id, message_id=message_id))


async def _seed_attachment(
    db: Database,
    project_id: int,
    teacher_id: int | None,
    stored_path: Path,
    *,
    original_filename: str | None = None,
    message_id: str | None = None,
) -> None:
    """Insert a reply and one attachment pointing at *stored_path*."""
    async with db.session() as session:
        reply = Reply(
            project_id=project_id,
            teacher_id=teacher_id,
            from_email="x@school.test",
            message_id=message_id or f"<{stored_path.name}@test>",
            received_at=datetime.now(UTC),
        )
        session.add(reply)
        await session.flush()
        session.add(
            Attachment(
                reply_id=reply.id,
                project_id=project_id,
                teacher_id=teacher_id,
                original_filename=original_filename or stored_path.name,
                stored_path=str(stored_path),
                content_type=XLSX_TYPE,
                file_size=0,
            )
        )
        await session.commit()


# ------------------------------------------------------------------
# Spreadsheet builders
# ------------------------------------------------------------------


def _write_xlsx(path: Path, rows: list[list[object]]) -> Path:
    """Write *rows* to the first sheet of a new workbook at *path*."""
    path.parent.mkdir(parents=True, exist_ok=True)
    workbook = openpyxl.Workbook()
    sheet = workbook.active
    for row in rows:
        sheet.append(row)
    workbook.save(path)
    return path


def _xlsx_bytes(tmp_path: Path, rows: list[list[object]], name: str = "reply.xlsx") -> bytes:
    return _write_xlsx(tmp_path / "build" / name, rows).read_bytes()


def _read_xlsx(path: Path) -> list[list[object]]:
    workbook = openpyxl.load_workbook(path)
    try:
        sheet = workbook.worksheets[0]
        return [
            ["" if v is None else v for v in row] for row in sheet.iter_rows(values_only=True)
        ]
    finally:
        workbook.close()


# ------------------------------------------------------------------
# Sample EML builders
# ------------------------------------------------------------------


def _build_plain_email(
    *,
    subject: str = "Re: Survey",
    from_addr: str = "teacher1@school.test",
    to_addr: str = "survey@school.test",
    body: str = "Hello, here is my reply.",
    message_id: str | None = "<reply-001@school.test>",
    in_reply_to: str | None = None,
    references: str | None = None,
    date: str | None = "Mon, 02 Jun 2025 12:00:00 +0000",
) -> bytes:
    """Build a simple plain-text email as raw bytes."""
    msg = MIMEText(body, "plain")
    msg["Subject"] = subject
    msg["From"] = from_addr
    msg["To"] = to_addr
    if message_id:
        msg["Message-ID"] = message_id
    if in_reply_to:
        msg["In-Reply-To"] = in_reply_to
    if references:
        msg["References"] = references
    if date:
        msg["Date"] = date
    return msg.as_bytes()


def _build_reply_with_attachments(
    *,
    from_addr: str = "teacher1@school.test",
    message_id: str = "<reply-att-001@school.test>",
    in_reply_to: str | None = None,
    body_text: str = "Please find the sheet attached.",
    body_html: str | None = None,
    attachments: list[tuple[str, str, bytes]] | None = None,
) -> bytes:
    """Build a multipart reply with a text body and attachments.

    Each attachment is ``(filename, content_type, payload)``.
    """
    msg = MIMEMultipart("mixed")
    msg["Subject"] = "Re: Survey"
    msg["From"] = from_addr
    msg["To"] = "survey@school.test"
    msg["Message-ID"] = message_id
    msg["Date"] = "Mon, 02 Jun 2025 12:00:00 +0000"
    if in_reply_to:
        msg["In-Reply-To"] = in_reply_to

    if body_html is not None:
        alt = MIMEMultipart("alternative")
        alt.attach(MIMEText(body_text, "plain"))
        alt.attach(MIMEText(body_html, "html"))
        msg.attach(alt)
    else:
        msg.attach(MIMEText(body_text, "plain"))

    for filename, content_type, payload in attachments or []:
        maintype, subtype = content_type.split("/", 1)
        part = MIMEBase(maintype, subtype)
        part.set_payload(payload)
        encoders.encode_base64(part)
        part.add_header("Content-Disposition", "attachment", filename=filename)
        msg.attach(part)

    return msg.as_bytes()


# ------------------------------------------------------------------
# Transport fakes
# ------------------------------------------------------------------


class FakeSmtp:
    """Records composed messages; raises for addresses in ``fail_for``."""

    def __init__(self, fail_for: set[str] | None = None) -> None:
        self.sent: list[ComposedEmail] = []
        self.fail_for = fail_for or set()

    async def send(self, composed: ComposedEmail) -> str:
        if composed.to in self.fail_for:
            raise TransportError(f"SMTP send to {composed.to} failed: 550")
        self.sent.append(composed)
        return composed.message_id


class FakeImap:
    """Async-context-manager stand-in for AsyncImapClient."""

    def __init__(
        self,
        messages: list[bytes] | None = None,
        *,
        connect_error: Exception | None = None,
        gate: asyncio.Event | None = None,
    ) -> None:
        self.messages = messages or []
        self.connect_error = connect_error
        self.gate = gate
        self.disconnected = False

    async def __aenter__(self) -> FakeImap:
        if self.connect_error is not None:
            raise self.connect_error
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.disconnected = True

    async def fetch_all(self) -> list[FetchedEmail]:
        if self.gate is not None:
            await self.gate.wait()
        return [FetchedEmail(uid=str(n), raw_bytes=raw) for n, raw in enumerate(self.messages, 1)]
