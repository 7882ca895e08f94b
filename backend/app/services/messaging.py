"""Producers for system, project and private messages."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Iterable

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from app.config import get_settings
from app.database import transaction
from app.models import (
    MessageKind,
    MessageNotification,
    PrivateConversation,
    PrivateMessage,
    Project,
    ProjectChat,
    ProjectMember,
    ProjectMessage,
    SystemMessage,
    SystemMessageRecipient,
    User,
    utcnow,
)
from app.services.errors import ForbiddenError, MessageValidationError, NotFoundError
from app.services.permissions import (
    ConversationRef,
    is_project_member,
    require_participant,
    require_project_member,
)
from relay.realtime.events import message_event

if TYPE_CHECKING:  # pragma: no cover - typing helper
    from relay.realtime.managers import DeliveryChannel

logger = logging.getLogger(__name__)

settings = get_settings()

TITLE_MAX_LENGTH = 255


@dataclass(frozen=True, slots=True)
class PostedMessage:
    """A stored message together with the streams that should hear about it."""

    kind: MessageKind
    message: Any
    conversation: ConversationRef | None
    sender_id: int | None
    recipient_ids: tuple[int, ...]


def validate_content(content: str | None) -> str:
    normalized = (content or "").strip()
    if not normalized:
        raise MessageValidationError("Message content is required")
    if len(normalized) > settings.chat_message_max_length:
        raise MessageValidationError(
            f"Message exceeds maximum length of {settings.chat_message_max_length} characters"
        )
    return normalized


def clamp_history_limit(limit: int | None) -> int:
    if limit is None:
        return settings.chat_history_default_limit
    return max(1, min(int(limit), settings.chat_history_max_limit))


def _notify(db: Session, kind: MessageKind, message_id: int, user_ids: Iterable[int]) -> None:
    for user_id in user_ids:
        db.add(MessageNotification(kind=kind, message_id=message_id, user_id=user_id))


# ---------------------------------------------------------------------------
# System broadcasts
# ---------------------------------------------------------------------------


def post_system_message(
    db: Session,
    sender: User | None,
    *,
    title: str,
    content: str,
    is_global: bool = False,
    recipient_ids: Iterable[int] = (),
) -> PostedMessage:
    """Store a system broadcast with one recipient row per target user.

    Global broadcasts fan out to every active user except the sender at the
    time of sending; users created later do not receive them.
    """

    title = (title or "").strip()
    if not title:
        raise MessageValidationError("Title is required")
    if len(title) > TITLE_MAX_LENGTH:
        raise MessageValidationError(f"Title exceeds maximum length of {TITLE_MAX_LENGTH} characters")
    body = validate_content(content)

    sender_id = sender.id if sender is not None else None
    if is_global:
        stmt = select(User.id).where(User.is_active.is_(True))
        if sender_id is not None:
            stmt = stmt.where(User.id != sender_id)
        recipients = list(db.execute(stmt.order_by(User.id)).scalars())
    else:
        wanted = list(dict.fromkeys(int(user_id) for user_id in recipient_ids))
        if not wanted:
            raise MessageValidationError("At least one recipient is required")
        found = set(db.execute(select(User.id).where(User.id.in_(wanted))).scalars())
        missing = [user_id for user_id in wanted if user_id not in found]
        if missing:
            raise NotFoundError(f"Unknown recipients: {', '.join(map(str, missing))}")
        recipients = wanted

    with transaction(db):
        message = SystemMessage(sender_id=sender_id, title=title, content=body, is_global=is_global)
        db.add(message)
        db.flush()
        for user_id in recipients:
            db.add(SystemMessageRecipient(message_id=message.id, user_id=user_id))
    db.refresh(message)
    logger.info("System message %s sent to %s recipients", message.id, len(recipients))
    return PostedMessage(
        kind=MessageKind.SYSTEM,
        message=message,
        conversation=None,
        sender_id=sender_id,
        recipient_ids=tuple(recipients),
    )


# ---------------------------------------------------------------------------
# Project chat
# ---------------------------------------------------------------------------


def get_project(project_id: int, db: Session) -> Project:
    project = db.get(Project, project_id)
    if project is None:
        raise NotFoundError("Project not found")
    return project


def ensure_project_chat(project: Project, db: Session) -> ProjectChat:
    chat = db.execute(select(ProjectChat).where(ProjectChat.project_id == project.id)).scalar_one_or_none()
    if chat is None:
        chat = ProjectChat(project_id=project.id)
        db.add(chat)
        db.flush()
    return chat


def post_project_message(db: Session, sender: User, project_id: int, content: str) -> PostedMessage:
    project = get_project(project_id, db)
    require_project_member(project.id, sender.id, db)
    body = validate_content(content)

    member_ids = list(
        db.execute(
            select(ProjectMember.user_id).where(
                ProjectMember.project_id == project.id,
                ProjectMember.is_active.is_(True),
                ProjectMember.user_id != sender.id,
            )
        ).scalars()
    )
    with transaction(db):
        chat = ensure_project_chat(project, db)
        message = ProjectMessage(chat_id=chat.id, sender_id=sender.id, content=body)
        db.add(message)
        db.flush()
        _notify(db, MessageKind.PROJECT, message.id, member_ids)
    db.refresh(message)
    return PostedMessage(
        kind=MessageKind.PROJECT,
        message=message,
        conversation=ConversationRef.project(project.id),
        sender_id=sender.id,
        recipient_ids=tuple(member_ids),
    )


def list_project_messages(
    db: Session, user: User, project_id: int, *, limit: int | None = None, before: int | None = None
) -> list[ProjectMessage]:
    """Visible history of a project chat, oldest first."""

    project = get_project(project_id, db)
    require_project_member(project.id, user.id, db)
    stmt = (
        select(ProjectMessage)
        .join(ProjectChat, ProjectChat.id == ProjectMessage.chat_id)
        .where(ProjectChat.project_id == project.id, ProjectMessage.is_deleted.is_(False))
        .options(selectinload(ProjectMessage.sender), selectinload(ProjectMessage.chat))
    )
    if before is not None:
        stmt = stmt.where(ProjectMessage.id < before)
    stmt = stmt.order_by(ProjectMessage.created_at.desc(), ProjectMessage.id.desc()).limit(
        clamp_history_limit(limit)
    )
    return list(reversed(db.execute(stmt).scalars().all()))


# ---------------------------------------------------------------------------
# Private conversations
# ---------------------------------------------------------------------------


def get_or_create_conversation(
    db: Session, user: User, participant_id: int, project_id: int | None = None
) -> tuple[PrivateConversation, bool]:
    """Return the conversation between two users, creating it on first use."""

    if participant_id == user.id:
        raise MessageValidationError("Cannot start a conversation with yourself")
    participant = db.get(User, participant_id)
    if participant is None or not participant.is_active:
        raise NotFoundError("User not found")
    if project_id is not None:
        get_project(project_id, db)
        if not (is_project_member(project_id, user.id, db) and is_project_member(project_id, participant_id, db)):
            raise ForbiddenError("Both users must belong to the project")

    first, second = sorted((user.id, participant_id))
    stmt = select(PrivateConversation).where(
        PrivateConversation.participant_a_id == first,
        PrivateConversation.participant_b_id == second,
    )
    if project_id is None:
        stmt = stmt.where(PrivateConversation.project_id.is_(None))
    else:
        stmt = stmt.where(PrivateConversation.project_id == project_id)
    conversation = db.execute(stmt).scalar_one_or_none()
    if conversation is not None:
        return conversation, False

    with transaction(db):
        conversation = PrivateConversation(
            participant_a_id=first, participant_b_id=second, project_id=project_id
        )
        db.add(conversation)
    db.refresh(conversation)
    logger.debug("Created private conversation %s", conversation.id)
    return conversation, True


def post_private_message(db: Session, sender: User, conversation_id: int, content: str) -> PostedMessage:
    conversation = require_participant(conversation_id, sender.id, db)
    body = validate_content(content)
    receiver_id = conversation.other_participant(sender.id)

    now = utcnow()
    with transaction(db):
        message = PrivateMessage(
            conversation_id=conversation.id,
            sender_id=sender.id,
            receiver_id=receiver_id,
            content=body,
            created_at=now,
        )
        db.add(message)
        db.flush()
        conversation.last_message_at = now
        _notify(db, MessageKind.PRIVATE, message.id, [receiver_id])
    db.refresh(message)
    return PostedMessage(
        kind=MessageKind.PRIVATE,
        message=message,
        conversation=ConversationRef.private(conversation.id),
        sender_id=sender.id,
        recipient_ids=(receiver_id,),
    )


def list_private_messages(
    db: Session, user: User, conversation_id: int, *, limit: int | None = None, before: int | None = None
) -> list[PrivateMessage]:
    conversation = require_participant(conversation_id, user.id, db)
    stmt = (
        select(PrivateMessage)
        .where(PrivateMessage.conversation_id == conversation.id, PrivateMessage.is_deleted.is_(False))
        .options(selectinload(PrivateMessage.sender))
    )
    if before is not None:
        stmt = stmt.where(PrivateMessage.id < before)
    stmt = stmt.order_by(PrivateMessage.created_at.desc(), PrivateMessage.id.desc()).limit(
        clamp_history_limit(limit)
    )
    return list(reversed(db.execute(stmt).scalars().all()))


# ---------------------------------------------------------------------------
# Deletion
# ---------------------------------------------------------------------------

_DELETABLE = {
    MessageKind.SYSTEM: SystemMessage,
    MessageKind.PROJECT: ProjectMessage,
    MessageKind.PRIVATE: PrivateMessage,
}


def soft_delete_message(db: Session, user: User, kind: MessageKind, message_id: int) -> None:
    """Hide a message from history and unread counts; only its sender may do so."""

    message = db.get(_DELETABLE[kind], message_id)
    if message is None or message.is_deleted:
        raise NotFoundError()
    if message.sender_id != user.id:
        raise ForbiddenError("Only the sender can delete this message")
    with transaction(db):
        message.is_deleted = True
        message.deleted_at = utcnow()


async def publish_message_events(posted: PostedMessage, payload: dict[str, Any], channel: DeliveryChannel) -> None:
    """Push a new message to its conversation and to each recipient's inbox."""

    if posted.conversation is not None:
        conversation_id = str(posted.conversation)
        await channel.publish(
            conversation_id,
            message_event(conversation_id, payload),
            exclude_user_id=posted.sender_id,
        )
    for user_id in posted.recipient_ids:
        inbox = str(ConversationRef.inbox(user_id))
        await channel.publish(inbox, message_event(inbox, payload))
