"""survey-mail: email dispatch, reply correlation and spreadsheet aggregation."""

from .aggregator import AggregationResult, SpreadsheetAggregator
from .config import ImapConfig, MailAccount, Settings, SmtpConfig, StorageConfig
from .correlator import ProcessOutcome, ReplyCorrelator
from .db import Database
from .errors import (
    DispatchQueueFullError,
    IngestionInProgressError,
    NoSpreadsheetDataError,
    ParseError,
    PersistenceError,
    ProjectNotFoundError,
    SurveyMailError,
    TransportError,
)
from .logging import setup_logging
from .models import HealthStatus, IngestionReport, RunResult, ServiceStatus
from .service import SurveyMailService

__all__ = [
    "AggregationResult",
    "Database",
    "DispatchQueueFullError",
    "HealthStatus",
    "ImapConfig",
    "IngestionInProgressError",
    "IngestionReport",
    "MailAccount",
    "NoSpreadsheetDataError",
    "ParseError",
    "PersistenceError",
    "ProcessOutcome",
    "ProjectNotFoundError",
    "ReplyCorrelator",
    "RunResult",
    "ServiceStatus",
    "Settings",
    "SmtpConfig",
    "SpreadsheetAggregator",
    "StorageConfig",
    "SurveyMailError",
    "SurveyMailService",
    "TransportError",
    "setup_logging",
]
