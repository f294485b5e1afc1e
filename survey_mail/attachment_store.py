"""Local storage for attachments received with replies.

File writes are wrapped with ``asyncio.to_thread()`` to avoid blocking.
"""

from __future__ import annotations

import asyncio
import re
import time
from dataclasses import dataclass
from pathlib import Path

import structlog

from .config import StorageConfig
from .errors import PersistenceError
from .parser import ParsedAttachment

logger = structlog.get_logger()

DEFAULT_NAME = "attachment"
_UNSAFE = re.compile(r"[^A-Za-z0-9._-]")
_MAX_SUFFIX = 10_000


@dataclass
class StoredAttachment:
    """Where an attachment landed, plus the metadata recorded for it."""

    path: Path
    original_filename: str
    content_type: str
    size: int


def sanitize_filename(name: str) -> str:
    """Reduce *name* to a bare filename of ``[A-Za-z0-9._-]`` characters.

    Directory components and ``..`` sequences are dropped; every other
    disallowed character becomes ``_``.
    """
    cleaned = (name or "").strip().replace("\\", "/")
    cleaned = cleaned.rsplit("/", 1)[-1]
    cleaned = cleaned.replace("..", "")
    cleaned = _UNSAFE.sub("_", cleaned).strip("_.")
    return cleaned or DEFAULT_NAME


class AttachmentStore:
    """Persist attachment bytes under ``{project}_{unix_ts}_{safe_name}``.

    An existing file is never overwritten: colliding names get a numeric
    disambiguator before the extension.
    """

    def __init__(self, config: StorageConfig) -> None:
        self._dir = Path(config.replies_dir)

    @property
    def directory(self) -> Path:
        return self._dir

    async def save(self, project_id: int, attachment: ParsedAttachment) -> StoredAttachment:
        safe_name = sanitize_filename(attachment.filename)
        base = f"{project_id}_{int(time.time())}_{safe_name}"
        try:
            path = await asyncio.to_thread(self._write_exclusive, base, attachment.payload)
        except OSError as exc:
            logger.error(
                "attachment_write_failed",
                project_id=project_id,
                filename=attachment.filename,
                error=str(exc),
            )
            raise PersistenceError(f"could not store {attachment.filename!r}: {exc}") from exc

        logger.info(
            "attachment_saved",
            project_id=project_id,
            path=str(path),
            size=len(attachment.payload),
        )
        return StoredAttachment(
            path=path,
            original_filename=attachment.filename,
            content_type=attachment.content_type,
            size=len(attachment.payload),
        )

    def _write_exclusive(self, base: str, payload: bytes) -> Path:
        self._dir.mkdir(parents=True, exist_ok=True)
        stem, dot, ext = base.rpartition(".")
        if not dot:
            stem, ext = base, ""
        for n in range(_MAX_SUFFIX):
            name = base if n == 0 else f"{stem}_{n}{dot}{ext}"
            path = self._dir / name
            try:
                with path.open("xb") as fh:
                    fh.write(payload)
            except FileExistsError:
                continue
            return path
        raise FileExistsError(f"no free name for {base} in {self._dir}")
