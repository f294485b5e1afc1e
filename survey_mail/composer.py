"""Builds outbound MIME messages from project templates.

Composition is a pure transform apart from reading the optional
attachment file from disk.
"""

from __future__ import annotations

import email.utils
import re
import secrets
import time
from dataclasses import dataclass
from email.message import EmailMessage
from pathlib import Path

import structlog

logger = structlog.get_logger()

DEFAULT_DOMAIN = "survey-mail.local"

_CONTENT_TYPES = {
    ".xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    ".xls": "application/vnd.ms-excel",
    ".pdf": "application/pdf",
    ".doc": "application/msword",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ".txt": "text/plain",
}

_TEACHER_TOKENS = ("teacher_name", "recipient_name")
_PROJECT_TOKENS = ("project_name", "request_name")
_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z_]+)\s*\}\}")


@dataclass
class ComposedEmail:
    """A ready-to-send message and its correlation identifier."""

    message: EmailMessage
    message_id: str
    to: str


def render_template(text: str, teacher_name: str, project_name: str) -> str:
    """Substitute ``{{teacher_name}}`` / ``{{project_name}}`` in any letter case.

    Placeholders that are not recognised are left as they are.
    """

    def _replace(match: re.Match[str]) -> str:
        token = match.group(1).lower()
        if token in _TEACHER_TOKENS:
            return teacher_name
        if token in _PROJECT_TOKENS:
            return project_name
        return match.group(0)

    return _PLACEHOLDER.sub(_replace, text or "")


def new_message_id(sender: str) -> str:
    """Return ``<unix-ts.hex@domain>`` with 64 random bits."""
    _, _, domain = sender.rpartition("@")
    domain = domain.strip(" >") or DEFAULT_DOMAIN
    return f"<{int(time.time())}.{secrets.token_hex(8)}@{domain}>"


def guess_content_type(filename: str) -> str:
    return _CONTENT_TYPES.get(Path(filename).suffix.lower(), "application/octet-stream")


class MessageComposer:
    """Compose dispatch and reminder messages for one sender address."""

    def __init__(self, sender_address: str) -> None:
        self._sender = sender_address

    def compose(
        self,
        to: str,
        subject: str,
        body: str,
        attachment_path: Path | str | None = None,
    ) -> ComposedEmail:
        message_id = new_message_id(self._sender)

        msg = EmailMessage()
        msg["From"] = self._sender
        msg["To"] = to
        msg["Subject"] = subject
        msg["Date"] = email.utils.formatdate(localtime=False)
        msg["Message-ID"] = message_id
        msg.set_content(body, charset="utf-8")

        if attachment_path:
            self._attach(msg, Path(attachment_path))

        return ComposedEmail(message=msg, message_id=message_id, to=to)

    def compose_reminder(
        self,
        to: str,
        teacher_name: str,
        project_name: str,
        subject_template: str,
        body_template: str,
    ) -> ComposedEmail:
        subject = "Reminder: " + render_template(subject_template, teacher_name, project_name)
        original = render_template(body_template, teacher_name, project_name)
        body = (
            f"Dear {teacher_name},\n\n"
            f"This is a reminder about: {project_name}\n\n"
            "Please complete and reply at your earliest convenience. Thank you!\n\n"
            f"Original message:\n{original}"
        )
        return self.compose(to, subject, body)

    def _attach(self, msg: EmailMessage, path: Path) -> None:
        try:
            payload = path.read_bytes()
        except OSError as exc:
            # Sending continues without the attachment
            logger.warning("attachment_unreadable", path=str(path), error=str(exc))
            return

        maintype, _, subtype = guess_content_type(path.name).partition("/")
        msg.add_attachment(payload, maintype=maintype, subtype=subtype, filename=path.name)
