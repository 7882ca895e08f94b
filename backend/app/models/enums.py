from __future__ import annotations

from enum import Enum


class MessageKind(str, Enum):
    """Sources of messages that contribute to a user's unread count."""

    SYSTEM = "system"
    PROJECT = "project"
    PRIVATE = "private"


class ProjectRole(str, Enum):
    """Roles that a user can have inside a project."""

    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"
