"""Full MIME parser: walks the entire message to extract the envelope,
plain-text body, attachments, and all headers.
"""

from __future__ import annotations

import email
import email.errors
import email.message
import email.policy
import email.utils
from dataclasses import dataclass, field
from datetime import UTC, datetime

import structlog

from .errors import ParseError

logger = structlog.get_logger()


@dataclass
class ParsedAttachment:
    """A single attachment extracted from a MIME email."""

    filename: str
    content_type: str
    payload: bytes


@dataclass
class ParsedEmail:
    """Structured representation of a fully parsed inbound email."""

    message_id: str
    subject: str
    from_address: str
    in_reply_to: str
    references: list[str]
    received_at: datetime
    body_text: str
    headers: dict[str, str]
    attachments: list[ParsedAttachment] = field(default_factory=list)


class MimeParser:
    """Stateless parser: raw RFC 822 bytes to ParsedEmail."""

    def parse(self, raw_bytes: bytes) -> ParsedEmail:
        try:
            msg = email.message_from_bytes(raw_bytes, policy=email.policy.default)
            headers = {k: str(v) for k, v in msg.items()}
        except (ValueError, TypeError, LookupError, email.errors.MessageError) as exc:
            raise ParseError(f"malformed message envelope: {exc}") from exc

        from_address = _first_address(headers.get("From", ""))
        if not from_address:
            raise ParseError("message has no From address")

        return ParsedEmail(
            message_id=headers.get("Message-ID", "").strip(),
            subject=headers.get("Subject", ""),
            from_address=from_address,
            in_reply_to=headers.get("In-Reply-To", "").strip(),
            references=headers.get("References", "").split(),
            received_at=_parse_date(headers.get("Date")),
            body_text=self._extract_body(msg),
            headers=headers,
            attachments=self._extract_attachments(msg),
        )

    def _extract_body(self, msg: email.message.EmailMessage) -> str:
        """Concatenate every inline text part; HTML only when there is no plain text."""
        plain: list[str] = []
        html: list[str] = []

        for part in msg.walk():
            # Multipart containers have no content of their own
            if part.get_content_maintype() == "multipart":
                continue
            if _is_attachment(part):
                continue
            content_type = part.get_content_type()
            if content_type not in ("text/plain", "text/html"):
                continue
            try:
                payload = part.get_content()
            except (LookupError, ValueError, UnicodeError, AssertionError) as exc:
                logger.warning("mime_part_skipped", content_type=content_type, error=str(exc))
                continue
            if not isinstance(payload, str):
                continue
            (plain if content_type == "text/plain" else html).append(payload)

        return "".join(plain) if plain else "".join(html)

    def _extract_attachments(self, msg: email.message.EmailMessage) -> list[ParsedAttachment]:
        """Walk MIME parts and collect attachments."""
        attachments: list[ParsedAttachment] = []

        for part in msg.walk():
            if part.get_content_maintype() == "multipart" or not _is_attachment(part):
                continue
            try:
                payload = part.get_payload(decode=True)
                filename = part.get_filename()
            except (LookupError, ValueError, UnicodeError) as exc:
                logger.warning("mime_part_skipped", error=str(exc))
                continue
            if payload is None:
                logger.warning("mime_part_skipped", filename=filename, error="empty payload")
                continue

            attachments.append(
                ParsedAttachment(
                    filename=filename or "unnamed",
                    content_type=part.get_content_type(),
                    payload=payload,
                )
            )

        return attachments


def _is_attachment(part: email.message.Message) -> bool:
    """Content-Disposition: attachment, or a named non-text part."""
    disposition = str(part.get("Content-Disposition", "")).lower()
    if "attachment" in disposition:
        return True
    return bool(part.get_filename()) and part.get_content_maintype() != "text"


def _first_address(header_value: str) -> str:
    for _, addr in email.utils.getaddresses([header_value]):
        if addr:
            return addr.strip().lower()
    return ""


def _parse_date(value: str | None) -> datetime:
    """Header date in UTC, or now when absent or unparseable."""
    if not value:
        return datetime.now(UTC)
    try:
        parsed = email.utils.parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return datetime.now(UTC)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)
