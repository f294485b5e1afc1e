"""Exception hierarchy.

Correlation failures (unresolved or ambiguous replies) are ordinary traffic
and are reported as outcomes, not raised.
"""

from __future__ import annotations


class SurveyMailError(Exception):
    """Base class for all survey-mail errors."""


class TransportError(SurveyMailError):
    """SMTP/IMAP connect, authentication or protocol failure."""


class ParseError(SurveyMailError):
    """A raw message whose envelope could not be decoded."""


class PersistenceError(SurveyMailError):
    """A storage write or metadata write failed."""


class NoSpreadsheetDataError(SurveyMailError):
    """No usable spreadsheet data exists for a project."""

    def __init__(self, project_id: int) -> None:
        super().__init__(f"no usable spreadsheet data for project {project_id}")
        self.project_id = project_id


class ProjectNotFoundError(SurveyMailError):
    """The requested project does not exist."""

    def __init__(self, project_id: int) -> None:
        super().__init__(f"project {project_id} not found")
        self.project_id = project_id


class IngestionInProgressError(SurveyMailError):
    """Another ingestion pass is already running for the same mailbox."""

    def __init__(self, mailbox: str) -> None:
        super().__init__(f"ingestion already running for {mailbox}")
        self.mailbox = mailbox


class DispatchQueueFullError(SurveyMailError):
    """The background dispatch queue cannot accept another run."""
