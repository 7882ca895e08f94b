"""Database models package."""

from .base import Base
from .enums import MessageKind, ProjectRole
from .messaging import (
    MessageNotification,
    PrivateConversation,
    PrivateMessage,
    Project,
    ProjectChat,
    ProjectMember,
    ProjectMessage,
    ProjectMessageRead,
    SystemMessage,
    SystemMessageRecipient,
    User,
    utcnow,
)

__all__ = [
    "Base",
    "User",
    "Project",
    "ProjectMember",
    "ProjectChat",
    "ProjectMessage",
    "ProjectMessageRead",
    "SystemMessage",
    "SystemMessageRecipient",
    "PrivateConversation",
    "PrivateMessage",
    "MessageNotification",
    "MessageKind",
    "ProjectRole",
    "utcnow",
]
