"""Authorization checks for conversations and their subscribers."""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models import PrivateConversation, ProjectMember
from app.services.errors import ForbiddenError, MessageValidationError, NotFoundError

PROJECT_SCOPE = "project"
PRIVATE_SCOPE = "private"
INBOX_SCOPE = "inbox"

_SCOPES = (PROJECT_SCOPE, PRIVATE_SCOPE, INBOX_SCOPE)


@dataclass(frozen=True, slots=True)
class ConversationRef:
    """Parsed form of the opaque conversation identifier used by streams."""

    scope: str
    target_id: int

    @classmethod
    def parse(cls, raw: str) -> "ConversationRef":
        scope, sep, value = (raw or "").strip().partition(":")
        if not sep or scope not in _SCOPES:
            raise MessageValidationError(f"Unknown conversation id '{raw}'")
        try:
            target_id = int(value)
        except ValueError:
            raise MessageValidationError(f"Unknown conversation id '{raw}'") from None
        if target_id <= 0:
            raise MessageValidationError(f"Unknown conversation id '{raw}'")
        return cls(scope=scope, target_id=target_id)

    @classmethod
    def project(cls, project_id: int) -> "ConversationRef":
        return cls(PROJECT_SCOPE, project_id)

    @classmethod
    def private(cls, conversation_id: int) -> "ConversationRef":
        return cls(PRIVATE_SCOPE, conversation_id)

    @classmethod
    def inbox(cls, user_id: int) -> "ConversationRef":
        return cls(INBOX_SCOPE, user_id)

    def __str__(self) -> str:
        return f"{self.scope}:{self.target_id}"


def get_project_member(project_id: int, user_id: int, db: Session) -> ProjectMember | None:
    """Return the active membership entry for the user in the project."""

    stmt = select(ProjectMember).where(
        ProjectMember.project_id == project_id,
        ProjectMember.user_id == user_id,
        ProjectMember.is_active.is_(True),
    )
    return db.execute(stmt).scalar_one_or_none()


def is_project_member(project_id: int, user_id: int, db: Session) -> bool:
    return get_project_member(project_id, user_id, db) is not None


def require_project_member(project_id: int, user_id: int, db: Session) -> ProjectMember:
    membership = get_project_member(project_id, user_id, db)
    if membership is None:
        raise ForbiddenError("Not a project member")
    return membership


def is_participant(conversation: PrivateConversation, user_id: int) -> bool:
    return conversation.has_user(user_id)


def require_participant(conversation_id: int, user_id: int, db: Session) -> PrivateConversation:
    """Load a private conversation the user takes part in."""

    conversation = db.get(PrivateConversation, conversation_id)
    if conversation is None:
        raise NotFoundError("Conversation not found")
    if not conversation.has_user(user_id):
        raise ForbiddenError("Not a participant of this conversation")
    return conversation


def can_subscribe(ref: ConversationRef, user_id: int, db: Session) -> bool:
    """Decide whether the user may open a delivery stream for the reference."""

    if ref.scope == INBOX_SCOPE:
        return ref.target_id == user_id
    if ref.scope == PROJECT_SCOPE:
        return is_project_member(ref.target_id, user_id, db)
    conversation = db.get(PrivateConversation, ref.target_id)
    return conversation is not None and conversation.has_user(user_id)
