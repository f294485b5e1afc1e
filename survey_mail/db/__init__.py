"""Persistence layer: async engine, ORM models and typed queries."""

from .engine import Database
from .models import (
    Attachment,
    Base,
    Dispatch,
    MemberStatus,
    Project,
    ProjectMember,
    Reply,
    SentEmail,
    SentKind,
    Teacher,
)

__all__ = [
    "Attachment",
    "Base",
    "Database",
    "Dispatch",
    "MemberStatus",
    "Project",
    "ProjectMember",
    "Reply",
    "SentEmail",
    "SentKind",
    "Teacher",
]
