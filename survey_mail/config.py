"""Configuration loaded from environment variables.

Uses pydantic-settings so every field can be overridden via env vars.
Each transport and storage concern has its own prefix; ``Settings`` is the
root object handed explicitly to the service (there is no module-level
singleton).
"""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field, SecretStr
from pydantic_settings import BaseSettings


class SmtpConfig(BaseSettings):
    """Outbound SMTP server settings."""

    model_config = {"env_prefix": "SMTP_"}

    host: str = Field(default="localhost", description="SMTP server hostname")
    port: int = Field(default=465, description="SMTP server port")
    use_ssl: bool = Field(
        default=True,
        description="Use implicit TLS (SMTPS). When False, see ``starttls``.",
    )
    starttls: bool = Field(
        default=False,
        description="Upgrade a plain connection with STARTTLS (ignored when use_ssl)",
    )
    username: str = Field(default="", description="SMTP login username")
    password: SecretStr = Field(default=SecretStr(""), description="SMTP login password")
    sender_address: str = Field(
        default="noreply@example.com",
        description="From address used for outbound mail",
    )
    timeout_seconds: float = Field(
        default=30.0,
        description="Connect and I/O timeout for SMTP sessions",
    )


class ImapConfig(BaseSettings):
    """IMAP server connection settings."""

    model_config = {"env_prefix": "IMAP_"}

    host: str = Field(default="localhost", description="IMAP server hostname")
    port: int = Field(default=993, description="IMAP server port")
    use_ssl: bool = Field(default=True, description="Use SSL/TLS connection")
    username: str = Field(default="", description="IMAP login username")
    password: SecretStr = Field(default=SecretStr(""), description="IMAP login password")
    mailbox: str = Field(default="INBOX", description="IMAP mailbox/folder to read")
    timeout_seconds: float = Field(
        default=30.0,
        description="Connect and I/O timeout for IMAP sessions",
    )
    poll_interval_seconds: float = Field(
        default=600.0,
        description="Seconds between scheduled ingestion passes",
    )


class StorageConfig(BaseSettings):
    """Local directories for attachments, templates and aggregated output."""

    model_config = {"env_prefix": "STORAGE_"}

    replies_dir: Path = Field(
        default=Path("uploads/replies"),
        description="Directory for attachments received with replies",
    )
    aggregated_dir: Path = Field(
        default=Path("uploads/aggregated"),
        description="Directory for per-project aggregated workbooks",
    )
    templates_dir: Path = Field(
        default=Path("uploads/templates"),
        description="Directory holding spreadsheet templates sent with dispatches",
    )


class MailAccount(BaseModel):
    """Credentials of one mailbox owner.

    ``owner_id`` restricts sender-based correlation to projects created by
    that owner; ``None`` considers every active project.
    """

    smtp: SmtpConfig
    imap: ImapConfig
    owner_id: int | None = None

    @property
    def mailbox_key(self) -> str:
        """Identity used to serialise ingestion passes per mailbox."""
        return f"{self.imap.username}@{self.imap.host}/{self.imap.mailbox}"


class Settings(BaseSettings):
    """Root configuration for a survey-mail process.

    Nested configs are populated from their own env-var prefixes.
    """

    model_config = {"env_prefix": "SURVEY_MAIL_"}

    database_url: str = Field(
        default="sqlite+aiosqlite:///survey_mail.db",
        description="Async SQLAlchemy URL",
    )
    dispatch_workers: int = Field(
        default=2,
        ge=1,
        description="Number of background dispatch/reminder runs executed concurrently",
    )
    dispatch_queue_size: int = Field(
        default=100,
        ge=1,
        description="Maximum number of queued dispatch/reminder runs",
    )
    health_port: int = Field(default=8080, description="Port for the poller health endpoints")
    log_level: str = Field(default="INFO", description="Log level")
    log_json: bool = Field(
        default=True,
        description="Use JSON log output (True for prod, False for dev)",
    )

    smtp: SmtpConfig = Field(default_factory=SmtpConfig)
    imap: ImapConfig = Field(default_factory=ImapConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)

    def default_account(self) -> MailAccount:
        """The mailbox configured through ``SMTP_*`` / ``IMAP_*``."""
        return MailAccount(smtp=self.smtp, imap=self.imap)
