"""Unread counting across system, project and private messages."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import and_, exists, func, or_, select
from sqlalchemy.orm import Session, selectinload

from app.config import get_settings
from app.models import (
    MessageKind,
    PrivateConversation,
    PrivateMessage,
    ProjectChat,
    ProjectMember,
    ProjectMessage,
    ProjectMessageRead,
    SystemMessage,
    SystemMessageRecipient,
    User,
)
from app.monitoring.metrics import unread_snapshots_total
from app.services.permissions import ConversationRef

settings = get_settings()

SYSTEM_SOURCE = "System message"
PRIVATE_SOURCE = "Private message"


@dataclass(frozen=True, slots=True)
class UnreadSnapshot:
    """Point-in-time unread counts for one user."""

    system: int = 0
    project: int = 0
    private: int = 0

    @property
    def total(self) -> int:
        return self.system + self.project + self.private

    def as_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "breakdown": {"system": self.system, "project": self.project, "private": self.private},
        }


@dataclass(frozen=True, slots=True)
class RecentUnreadItem:
    """Single entry of the notification dropdown."""

    id: int
    kind: MessageKind
    content: str
    preview: str
    created_at: datetime
    source: str
    conversation_id: str
    sender: dict[str, Any] | None = field(default=None)


def build_preview(content: str, length: int | None = None) -> str:
    limit = settings.unread_preview_length if length is None else length
    if len(content) <= limit:
        return content
    return content[:limit] + "..."


def _as_utc(value: datetime) -> datetime:
    # SQLite and MySQL both hand back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _sender_payload(user: User | None) -> dict[str, Any] | None:
    if user is None:
        return None
    return {"id": user.id, "name": user.name, "email": user.email}


def _member_of_chat(user_id: int):
    return and_(
        ProjectMember.project_id == ProjectChat.project_id,
        ProjectMember.user_id == user_id,
        ProjectMember.is_active.is_(True),
    )


def _project_receipt_exists(user_id: int):
    return exists().where(
        ProjectMessageRead.message_id == ProjectMessage.id,
        ProjectMessageRead.user_id == user_id,
    )


def count_system_unread(user_id: int, db: Session) -> int:
    stmt = (
        select(func.count(SystemMessageRecipient.id))
        .join(SystemMessage, SystemMessage.id == SystemMessageRecipient.message_id)
        .where(
            SystemMessageRecipient.user_id == user_id,
            SystemMessageRecipient.is_read.is_(False),
            SystemMessage.is_deleted.is_(False),
        )
    )
    return int(db.execute(stmt).scalar_one())


def count_project_unread(user_id: int, db: Session) -> int:
    stmt = (
        select(func.count(ProjectMessage.id))
        .join(ProjectChat, ProjectChat.id == ProjectMessage.chat_id)
        .join(ProjectMember, _member_of_chat(user_id))
        .where(
            ProjectMessage.is_deleted.is_(False),
            ProjectMessage.sender_id != user_id,
            ~_project_receipt_exists(user_id),
        )
    )
    return int(db.execute(stmt).scalar_one())


def count_private_unread(user_id: int, db: Session) -> int:
    stmt = select(func.count(PrivateMessage.id)).where(
        PrivateMessage.receiver_id == user_id,
        PrivateMessage.is_read.is_(False),
        PrivateMessage.is_deleted.is_(False),
    )
    return int(db.execute(stmt).scalar_one())


def get_unread_snapshot(user_id: int, db: Session) -> UnreadSnapshot:
    """Compute the user's unread counts fresh from the store.

    An unknown user yields an all-zero snapshot instead of an error.
    """

    unread_snapshots_total.inc()
    if db.get(User, user_id) is None:
        return UnreadSnapshot()
    return UnreadSnapshot(
        system=count_system_unread(user_id, db),
        project=count_project_unread(user_id, db),
        private=count_private_unread(user_id, db),
    )


def clamp_recent_limit(limit: int | None) -> int:
    if limit is None:
        return settings.recent_unread_default_limit
    return max(1, min(int(limit), settings.recent_unread_max_limit))


def _recent_system(user_id: int, take: int, db: Session) -> list[RecentUnreadItem]:
    stmt = (
        select(SystemMessage)
        .join(SystemMessageRecipient, SystemMessageRecipient.message_id == SystemMessage.id)
        .where(
            SystemMessageRecipient.user_id == user_id,
            SystemMessageRecipient.is_read.is_(False),
            SystemMessage.is_deleted.is_(False),
        )
        .options(selectinload(SystemMessage.sender))
        .order_by(SystemMessage.created_at.desc(), SystemMessage.id.desc())
        .limit(take)
    )
    inbox = str(ConversationRef.inbox(user_id))
    return [
        RecentUnreadItem(
            id=message.id,
            kind=MessageKind.SYSTEM,
            content=message.content,
            preview=build_preview(message.content),
            created_at=message.created_at,
            source=SYSTEM_SOURCE,
            conversation_id=inbox,
            sender=_sender_payload(message.sender),
        )
        for message in db.execute(stmt).scalars()
    ]


def _recent_project(user_id: int, take: int, db: Session) -> list[RecentUnreadItem]:
    stmt = (
        select(ProjectMessage)
        .join(ProjectChat, ProjectChat.id == ProjectMessage.chat_id)
        .join(ProjectMember, _member_of_chat(user_id))
        .where(
            ProjectMessage.is_deleted.is_(False),
            ProjectMessage.sender_id != user_id,
            ~_project_receipt_exists(user_id),
        )
        .options(
            selectinload(ProjectMessage.sender),
            selectinload(ProjectMessage.chat).selectinload(ProjectChat.project),
        )
        .order_by(ProjectMessage.created_at.desc(), ProjectMessage.id.desc())
        .limit(take)
    )
    items = []
    for message in db.execute(stmt).scalars():
        project = message.chat.project
        items.append(
            RecentUnreadItem(
                id=message.id,
                kind=MessageKind.PROJECT,
                content=message.content,
                preview=build_preview(message.content),
                created_at=message.created_at,
                source=f"Project: {project.name}",
                conversation_id=str(ConversationRef.project(project.id)),
                sender=_sender_payload(message.sender),
            )
        )
    return items


def _recent_private(user_id: int, take: int, db: Session) -> list[RecentUnreadItem]:
    stmt = (
        select(PrivateMessage)
        .where(
            PrivateMessage.receiver_id == user_id,
            PrivateMessage.is_read.is_(False),
            PrivateMessage.is_deleted.is_(False),
        )
        .options(selectinload(PrivateMessage.sender))
        .order_by(PrivateMessage.created_at.desc(), PrivateMessage.id.desc())
        .limit(take)
    )
    return [
        RecentUnreadItem(
            id=message.id,
            kind=MessageKind.PRIVATE,
            content=message.content,
            preview=build_preview(message.content),
            created_at=message.created_at,
            source=PRIVATE_SOURCE,
            conversation_id=str(ConversationRef.private(message.conversation_id)),
            sender=_sender_payload(message.sender),
        )
        for message in db.execute(stmt).scalars()
    ]


def recent_unread(user_id: int, limit: int | None, db: Session) -> list[RecentUnreadItem]:
    """Newest unread messages across every kind, for the notification dropdown.

    Each kind contributes a bounded share (half the limit for system
    messages, a third each for project and private) before the merged list
    is sorted newest first and cut down to ``limit``.
    """

    limit = clamp_recent_limit(limit)
    items = [
        *_recent_system(user_id, math.ceil(limit / 2), db),
        *_recent_project(user_id, math.ceil(limit / 3), db),
        *_recent_private(user_id, math.ceil(limit / 3), db),
    ]
    items.sort(key=lambda item: (_as_utc(item.created_at), item.id), reverse=True)
    return items[:limit]


@dataclass(frozen=True, slots=True)
class LastMessage:
    id: int
    content: str
    preview: str
    created_at: datetime
    sender: dict[str, Any] | None = None


@dataclass(frozen=True, slots=True)
class ConversationUnread:
    """One row of the conversation list with its own unread counter."""

    conversation_id: str
    kind: MessageKind
    target_id: int
    name: str
    unread_count: int
    last_activity: datetime
    last_message: LastMessage | None = None
    project_id: int | None = None


def _last_message(message: ProjectMessage | PrivateMessage | None) -> LastMessage | None:
    if message is None:
        return None
    return LastMessage(
        id=message.id,
        content=message.content,
        preview=build_preview(message.content),
        created_at=message.created_at,
        sender=_sender_payload(message.sender),
    )


def _latest_by(db: Session, model, group_column, group_ids: list[int]) -> dict[int, Any]:
    # highest surviving id per group stands in for the newest message
    if not group_ids:
        return {}
    latest_ids = (
        select(func.max(model.id))
        .where(group_column.in_(group_ids), model.is_deleted.is_(False))
        .group_by(group_column)
    )
    stmt = select(model).where(model.id.in_(latest_ids)).options(selectinload(model.sender))
    return {getattr(message, group_column.key): message for message in db.execute(stmt).scalars()}


def _project_conversations(user_id: int, db: Session) -> list[ConversationUnread]:
    chats = (
        db.execute(
            select(ProjectChat)
            .join(ProjectMember, _member_of_chat(user_id))
            .options(selectinload(ProjectChat.project))
        )
        .scalars()
        .all()
    )
    unread_stmt = (
        select(ProjectMessage.chat_id, func.count(ProjectMessage.id))
        .join(ProjectChat, ProjectChat.id == ProjectMessage.chat_id)
        .join(ProjectMember, _member_of_chat(user_id))
        .where(
            ProjectMessage.is_deleted.is_(False),
            ProjectMessage.sender_id != user_id,
            ~_project_receipt_exists(user_id),
        )
        .group_by(ProjectMessage.chat_id)
    )
    unread = {chat_id: int(count) for chat_id, count in db.execute(unread_stmt).all()}
    latest = _latest_by(db, ProjectMessage, ProjectMessage.chat_id, [chat.id for chat in chats])
    rows = []
    for chat in chats:
        last = latest.get(chat.id)
        rows.append(
            ConversationUnread(
                conversation_id=str(ConversationRef.project(chat.project_id)),
                kind=MessageKind.PROJECT,
                target_id=chat.project_id,
                name=chat.project.name,
                unread_count=unread.get(chat.id, 0),
                last_activity=last.created_at if last is not None else chat.created_at,
                last_message=_last_message(last),
                project_id=chat.project_id,
            )
        )
    return rows


def _private_conversations(user_id: int, db: Session) -> list[ConversationUnread]:
    conversations = (
        db.execute(
            select(PrivateConversation)
            .where(
                or_(
                    PrivateConversation.participant_a_id == user_id,
                    PrivateConversation.participant_b_id == user_id,
                )
            )
            .options(
                selectinload(PrivateConversation.participant_a),
                selectinload(PrivateConversation.participant_b),
            )
        )
        .scalars()
        .all()
    )
    unread_stmt = (
        select(PrivateMessage.conversation_id, func.count(PrivateMessage.id))
        .where(
            PrivateMessage.receiver_id == user_id,
            PrivateMessage.is_read.is_(False),
            PrivateMessage.is_deleted.is_(False),
        )
        .group_by(PrivateMessage.conversation_id)
    )
    unread = {conversation_id: int(count) for conversation_id, count in db.execute(unread_stmt).all()}
    latest = _latest_by(
        db, PrivateMessage, PrivateMessage.conversation_id, [conversation.id for conversation in conversations]
    )
    rows = []
    for conversation in conversations:
        other = (
            conversation.participant_b
            if conversation.participant_a_id == user_id
            else conversation.participant_a
        )
        last = latest.get(conversation.id)
        rows.append(
            ConversationUnread(
                conversation_id=str(ConversationRef.private(conversation.id)),
                kind=MessageKind.PRIVATE,
                target_id=conversation.id,
                name=other.display_name,
                unread_count=unread.get(conversation.id, 0),
                last_activity=last.created_at if last is not None else conversation.created_at,
                last_message=_last_message(last),
                project_id=conversation.project_id,
            )
        )
    return rows


def conversation_unread(
    user_id: int, db: Session, *, kind: MessageKind | None = None
) -> list[ConversationUnread]:
    """Project chats and private conversations of the user, most recently active first.

    ``unread_count`` follows the same rules as the global counters, so the
    per-conversation numbers of one kind add up to that kind's total.
    System messages have no conversation and are never listed.
    """

    rows: list[ConversationUnread] = []
    if kind in (None, MessageKind.PROJECT):
        rows.extend(_project_conversations(user_id, db))
    if kind in (None, MessageKind.PRIVATE):
        rows.extend(_private_conversations(user_id, db))
    rows.sort(key=lambda row: (_as_utc(row.last_activity), row.conversation_id), reverse=True)
    return rows
