"""Typed, parameterized queries shared by the correlator, dispatcher and aggregator.

Every function takes an open ``AsyncSession``; callers decide the
transaction boundary.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from survey_mail.db.models import (
    Attachment,
    MemberStatus,
    Project,
    ProjectMember,
    Reply,
    SentEmail,
    Teacher,
)

ACTIVE = "active"


@dataclass
class AttachmentSource:
    """An attachment joined with the teacher who sent it."""

    stored_path: str
    original_filename: str
    teacher_name: str
    teacher_email: str


# ------------------------------------------------------------------
# Reference data (read-only for the engine)
# ------------------------------------------------------------------


async def get_project(session: AsyncSession, project_id: int) -> Project | None:
    return await session.get(Project, project_id)


async def get_teacher(session: AsyncSession, teacher_id: int) -> Teacher | None:
    return await session.get(Teacher, teacher_id)


async def find_teacher_by_email(session: AsyncSession, address: str) -> Teacher | None:
    stmt = select(Teacher).where(func.lower(Teacher.email) == address.strip().lower())
    result = await session.execute(stmt)
    return result.scalars().first()


# ------------------------------------------------------------------
# Ledger
# ------------------------------------------------------------------


async def find_sent_email(session: AsyncSession, message_id: str) -> SentEmail | None:
    result = await session.execute(select(SentEmail).where(SentEmail.message_id == message_id))
    return result.scalar_one_or_none()


# ------------------------------------------------------------------
# Memberships
# ------------------------------------------------------------------


async def active_project_ids_for_teacher(
    session: AsyncSession,
    teacher_id: int,
    *,
    owner_id: int | None = None,
) -> list[int]:
    stmt = (
        select(Project.id)
        .join(ProjectMember, ProjectMember.project_id == Project.id)
        .where(ProjectMember.teacher_id == teacher_id, Project.status == ACTIVE)
        .order_by(Project.id)
    )
    if owner_id is not None:
        stmt = stmt.where(Project.created_by == owner_id)
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def unsent_member_ids(session: AsyncSession, project_id: int) -> list[int]:
    stmt = (
        select(ProjectMember.teacher_id)
        .where(ProjectMember.project_id == project_id, ProjectMember.sent_at.is_(None))
        .order_by(ProjectMember.id)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def awaiting_reply_member_ids(
    session: AsyncSession,
    project_id: int,
    teacher_ids: Sequence[int] | None = None,
) -> list[int]:
    """Members that have not replied yet, whether or not they were sent the survey."""
    stmt = (
        select(ProjectMember.teacher_id)
        .where(
            ProjectMember.project_id == project_id,
            ProjectMember.current_status != MemberStatus.REPLIED.value,
        )
        .order_by(ProjectMember.id)
    )
    if teacher_ids:
        stmt = stmt.where(ProjectMember.teacher_id.in_(list(teacher_ids)))
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def get_member(
    session: AsyncSession, project_id: int, teacher_id: int
) -> ProjectMember | None:
    stmt = select(ProjectMember).where(
        ProjectMember.project_id == project_id,
        ProjectMember.teacher_id == teacher_id,
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def mark_member_sent(
    session: AsyncSession, project_id: int, teacher_id: int, sent_at: datetime
) -> None:
    """Set ``sent_at``; create the membership if it does not exist yet.

    A member that already replied keeps its ``replied`` status.
    """
    member = await get_member(session, project_id, teacher_id)
    if member is None:
        session.add(
            ProjectMember(
                project_id=project_id,
                teacher_id=teacher_id,
                sent_at=sent_at,
                current_status=MemberStatus.SENT.value,
            )
        )
        return
    member.sent_at = sent_at
    if member.current_status == MemberStatus.PENDING.value:
        member.current_status = MemberStatus.SENT.value


async def mark_member_replied(
    session: AsyncSession, project_id: int, teacher_id: int, replied_at: datetime
) -> int:
    """Returns the number of membership rows updated (0 or 1)."""
    stmt = (
        update(ProjectMember)
        .where(ProjectMember.project_id == project_id, ProjectMember.teacher_id == teacher_id)
        .values(current_status=MemberStatus.REPLIED.value, last_reply_at=replied_at)
    )
    result = await session.execute(stmt)
    return result.rowcount or 0


# ------------------------------------------------------------------
# Replies and attachments
# ------------------------------------------------------------------


async def reply_exists(session: AsyncSession, message_id: str) -> bool:
    result = await session.execute(select(Reply.id).where(Reply.message_id == message_id))
    return result.first() is not None


async def latest_reply_at(
    session: AsyncSession, project_id: int, teacher_id: int
) -> datetime | None:
    stmt = select(func.max(Reply.received_at)).where(
        Reply.project_id == project_id, Reply.teacher_id == teacher_id
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def replied_teacher_ids(session: AsyncSession, project_id: int) -> list[int]:
    stmt = (
        select(Reply.teacher_id)
        .where(Reply.project_id == project_id, Reply.teacher_id.is_not(None))
        .distinct()
        .order_by(Reply.teacher_id)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def project_attachment_sources(
    session: AsyncSession, project_id: int
) -> list[AttachmentSource]:
    """Attachments of a project, earliest first, with teacher name/email."""
    stmt = (
        select(
            Attachment.stored_path,
            Attachment.original_filename,
            func.coalesce(Teacher.name, ""),
            func.coalesce(Teacher.email, ""),
        )
        .outerjoin(Teacher, Attachment.teacher_id == Teacher.id)
        .where(Attachment.project_id == project_id)
        .order_by(Attachment.created_at.asc(), Attachment.id.asc())
    )
    result = await session.execute(stmt)
    return [
        AttachmentSource(
            stored_path=stored_path,
            original_filename=original_filename,
            teacher_name=teacher_name,
            teacher_email=teacher_email,
        )
        for stored_path, original_filename, teacher_name, teacher_email in result.all()
    ]
