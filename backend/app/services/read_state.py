"""Mark-as-read transitions for the three message kinds."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Iterable, Sequence

from sqlalchemy import and_, exists, select, update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session

from app.config import get_settings
from app.database import transaction
from app.models import (
    MessageKind,
    MessageNotification,
    PrivateMessage,
    Project,
    ProjectChat,
    ProjectMember,
    ProjectMessage,
    ProjectMessageRead,
    SystemMessage,
    SystemMessageRecipient,
    utcnow,
)
from app.monitoring.metrics import read_marks_total, store_retries_total
from app.services.errors import ForbiddenError, MessageValidationError, NotFoundError, TransientStoreError
from app.services.permissions import (
    INBOX_SCOPE,
    PROJECT_SCOPE,
    ConversationRef,
    require_participant,
    require_project_member,
)
from relay.realtime.events import read_event

if TYPE_CHECKING:  # pragma: no cover - typing helper
    from relay.realtime.managers import DeliveryChannel

logger = logging.getLogger(__name__)

settings = get_settings()

# Marked ids grouped by the conversation they belong to.
MarkOutcome = dict[ConversationRef, list[int]]
Marker = Callable[[Session, int, Sequence[int] | None], MarkOutcome]


@dataclass(frozen=True, slots=True)
class ReadResult:
    kind: MessageKind
    marked_ids: tuple[int, ...] = ()
    by_conversation: dict[ConversationRef, tuple[int, ...]] = field(default_factory=dict)

    @property
    def marked_count(self) -> int:
        return len(self.marked_ids)

    @property
    def conversations(self) -> tuple[ConversationRef, ...]:
        return tuple(self.by_conversation)


def coerce_kind(value: MessageKind | str | None) -> MessageKind:
    if isinstance(value, MessageKind):
        return value
    try:
        return MessageKind(str(value).lower())
    except ValueError:
        raise MessageValidationError(f"Unknown message type '{value}'") from None


def normalize_batch(target_ids: Iterable[int]) -> list[int]:
    ids = list(dict.fromkeys(int(target_id) for target_id in target_ids))
    if not ids:
        raise MessageValidationError("messageIds must not be empty")
    if len(ids) > settings.mark_read_batch_max_size:
        raise MessageValidationError(
            f"At most {settings.mark_read_batch_max_size} messages can be marked at once"
        )
    return ids


def _flip_notifications(db: Session, kind: MessageKind, user_id: int, message_ids: Sequence[int] | None) -> None:
    stmt = update(MessageNotification).where(
        MessageNotification.kind == kind,
        MessageNotification.user_id == user_id,
        MessageNotification.is_read.is_(False),
    )
    if message_ids is not None:
        if not message_ids:
            return
        stmt = stmt.where(MessageNotification.message_id.in_(message_ids))
    db.execute(stmt.values(is_read=True, read_at=utcnow()).execution_options(synchronize_session=False))


def _mark_system(db: Session, user_id: int, target_ids: Sequence[int] | None) -> MarkOutcome:
    stmt = (
        select(SystemMessageRecipient)
        .join(SystemMessage, SystemMessage.id == SystemMessageRecipient.message_id)
        .where(
            SystemMessageRecipient.user_id == user_id,
            SystemMessageRecipient.is_read.is_(False),
            SystemMessage.is_deleted.is_(False),
        )
    )
    if target_ids is not None:
        stmt = stmt.where(SystemMessageRecipient.message_id.in_(target_ids))
    now = utcnow()
    marked: list[int] = []
    for row in db.execute(stmt).scalars():
        row.is_read = True
        row.read_at = now
        marked.append(row.message_id)
    return {ConversationRef.inbox(user_id): marked} if marked else {}


def _mark_project(db: Session, user_id: int, target_ids: Sequence[int] | None) -> MarkOutcome:
    stmt = (
        select(ProjectMessage.id, ProjectChat.project_id)
        .join(ProjectChat, ProjectChat.id == ProjectMessage.chat_id)
        .join(
            ProjectMember,
            and_(
                ProjectMember.project_id == ProjectChat.project_id,
                ProjectMember.user_id == user_id,
                ProjectMember.is_active.is_(True),
            ),
        )
        .where(
            ProjectMessage.is_deleted.is_(False),
            ProjectMessage.sender_id != user_id,
            ~exists().where(
                ProjectMessageRead.message_id == ProjectMessage.id,
                ProjectMessageRead.user_id == user_id,
            ),
        )
        .order_by(ProjectMessage.id)
    )
    if target_ids is not None:
        stmt = stmt.where(ProjectMessage.id.in_(target_ids))
    now = utcnow()
    outcome: MarkOutcome = {}
    marked: list[int] = []
    for message_id, project_id in db.execute(stmt).all():
        db.add(ProjectMessageRead(message_id=message_id, user_id=user_id, read_at=now))
        outcome.setdefault(ConversationRef.project(project_id), []).append(message_id)
        marked.append(message_id)
    db.flush()
    _flip_notifications(db, MessageKind.PROJECT, user_id, marked if target_ids is not None else None)
    return outcome


def _mark_private(db: Session, user_id: int, target_ids: Sequence[int] | None) -> MarkOutcome:
    stmt = select(PrivateMessage).where(
        PrivateMessage.receiver_id == user_id,
        PrivateMessage.is_read.is_(False),
        PrivateMessage.is_deleted.is_(False),
    )
    if target_ids is not None:
        stmt = stmt.where(PrivateMessage.id.in_(target_ids))
    now = utcnow()
    outcome: MarkOutcome = {}
    marked: list[int] = []
    for message in db.execute(stmt.order_by(PrivateMessage.id)).scalars():
        message.is_read = True
        message.read_at = now
        outcome.setdefault(ConversationRef.private(message.conversation_id), []).append(message.id)
        marked.append(message.id)
    db.flush()
    _flip_notifications(db, MessageKind.PRIVATE, user_id, marked if target_ids is not None else None)
    return outcome


_MARKERS: dict[MessageKind, Marker] = {
    MessageKind.SYSTEM: _mark_system,
    MessageKind.PROJECT: _mark_project,
    MessageKind.PRIVATE: _mark_private,
}

_MESSAGE_MODELS = {
    MessageKind.SYSTEM: SystemMessage,
    MessageKind.PROJECT: ProjectMessage,
    MessageKind.PRIVATE: PrivateMessage,
}


def _apply(db: Session, kind: MessageKind, user_id: int, target_ids: Sequence[int] | None) -> ReadResult:
    """Run one marker inside a transaction, retrying transient store failures."""

    marker = _MARKERS[kind]
    attempts = settings.store_retry_attempts + 1
    for attempt in range(1, attempts + 1):
        try:
            with transaction(db):
                outcome = marker(db, user_id, target_ids)
        except DBAPIError as exc:
            if attempt >= attempts:
                store_retries_total.inc(outcome="exhausted")
                logger.error("Marking %s messages read failed after %s attempts", kind.value, attempt)
                raise TransientStoreError() from exc
            store_retries_total.inc(outcome="retried")
            logger.warning("Transient store error while marking %s messages read; retrying", kind.value)
            continue
        break

    if attempt > 1:
        store_retries_total.inc(outcome="recovered")
    grouped = {ref: tuple(ids) for ref, ids in outcome.items()}
    marked = tuple(message_id for ids in grouped.values() for message_id in ids)
    if marked:
        read_marks_total.inc(len(marked), kind=kind.value)
    return ReadResult(kind=kind, marked_ids=marked, by_conversation=grouped)


def mark_read(user_id: int, kind: MessageKind | str, target_id: int, db: Session) -> ReadResult:
    """Mark a single message read for the user.

    Raises ``NotFoundError`` when the message does not exist or was deleted.
    Messages the user may not read (own project posts, other people's
    private messages) are accepted as a no-op.
    """

    kind = coerce_kind(kind)
    message = db.get(_MESSAGE_MODELS[kind], int(target_id))
    if message is None or message.is_deleted:
        raise NotFoundError()
    return _apply(db, kind, user_id, [message.id])


def mark_batch_read(user_id: int, kind: MessageKind | str, target_ids: Iterable[int], db: Session) -> ReadResult:
    kind = coerce_kind(kind)
    return _apply(db, kind, user_id, normalize_batch(target_ids))


def mark_all_read(user_id: int, kind: MessageKind | str, db: Session) -> ReadResult:
    kind = coerce_kind(kind)
    return _apply(db, kind, user_id, None)


def _unread_in_project(db: Session, user_id: int, project_id: int) -> list[int]:
    if db.get(Project, project_id) is None:
        raise NotFoundError("Project not found")
    require_project_member(project_id, user_id, db)
    stmt = (
        select(ProjectMessage.id)
        .join(ProjectChat, ProjectChat.id == ProjectMessage.chat_id)
        .where(
            ProjectChat.project_id == project_id,
            ProjectMessage.is_deleted.is_(False),
            ProjectMessage.sender_id != user_id,
            ~exists().where(
                ProjectMessageRead.message_id == ProjectMessage.id,
                ProjectMessageRead.user_id == user_id,
            ),
        )
    )
    return list(db.execute(stmt).scalars())


def _unread_in_private(db: Session, user_id: int, conversation_id: int) -> list[int]:
    require_participant(conversation_id, user_id, db)
    stmt = select(PrivateMessage.id).where(
        PrivateMessage.conversation_id == conversation_id,
        PrivateMessage.receiver_id == user_id,
        PrivateMessage.is_read.is_(False),
        PrivateMessage.is_deleted.is_(False),
    )
    return list(db.execute(stmt).scalars())


def mark_conversation_read(user_id: int, conversation: ConversationRef | str, db: Session) -> ReadResult:
    """Mark everything the user has not read in one conversation.

    ``inbox:<user_id>`` stands for the user's own system messages. Messages
    arriving after the unread set is resolved stay unread.
    """

    ref = conversation if isinstance(conversation, ConversationRef) else ConversationRef.parse(conversation)
    if ref.scope == INBOX_SCOPE:
        if ref.target_id != user_id:
            raise ForbiddenError("Not allowed to modify another user's inbox")
        return _apply(db, MessageKind.SYSTEM, user_id, None)
    if ref.scope == PROJECT_SCOPE:
        kind, unread_ids = MessageKind.PROJECT, _unread_in_project(db, user_id, ref.target_id)
    else:
        kind, unread_ids = MessageKind.PRIVATE, _unread_in_private(db, user_id, ref.target_id)
    if not unread_ids:
        return ReadResult(kind=kind)
    return _apply(db, kind, user_id, unread_ids)


async def publish_read_events(result: ReadResult, reader_id: int, channel: DeliveryChannel) -> None:
    """Announce newly read messages to their conversations and the reader's inbox."""

    if not result.marked_ids:
        return
    inbox = ConversationRef.inbox(reader_id)
    for ref, message_ids in result.by_conversation.items():
        if ref == inbox:
            continue
        await channel.publish(str(ref), read_event(str(ref), message_ids, reader_id, result.kind.value))
    await channel.publish(str(inbox), read_event(str(inbox), result.marked_ids, reader_id, result.kind.value))
