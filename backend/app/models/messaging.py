from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.models.base import Base
from app.models.enums import MessageKind, ProjectRole


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_values(enum_cls) -> list[str]:
    return [member.value for member in enum_cls]


class User(Base):
    """Application user. Credentials live with the identity provider."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    name: Mapped[str | None] = mapped_column(String(128))
    image: Mapped[str | None] = mapped_column(String(512))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    memberships: Mapped[list["ProjectMember"]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )
    system_inbox: Mapped[list["SystemMessageRecipient"]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )

    @property
    def display_name(self) -> str:
        return self.name or self.email


class Project(Base):
    """Project whose members share a group chat."""

    __tablename__ = "projects"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    members: Mapped[list["ProjectMember"]] = relationship(
        back_populates="project", cascade="all, delete-orphan"
    )
    chat: Mapped["ProjectChat | None"] = relationship(
        back_populates="project", cascade="all, delete-orphan", uselist=False
    )


class ProjectMember(Base):
    """Link table between project and user with role."""

    __tablename__ = "project_members"
    __table_args__ = (UniqueConstraint("project_id", "user_id", name="uq_project_member"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    project_id: Mapped[int] = mapped_column(
        ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    role: Mapped[ProjectRole] = mapped_column(
        SAEnum(ProjectRole, name="project_role", values_callable=_enum_values),
        default=ProjectRole.MEMBER,
        nullable=False,
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    joined_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    project: Mapped[Project] = relationship(back_populates="members")
    user: Mapped[User] = relationship(back_populates="memberships")


class SystemMessage(Base):
    """Broadcast authored by an administrator or by the system itself."""

    __tablename__ = "system_messages"
    __table_args__ = (Index("ix_system_messages_created_at", "created_at"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    sender_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    is_global: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    sender: Mapped[User | None] = relationship(foreign_keys=[sender_id])
    recipients: Mapped[list["SystemMessageRecipient"]] = relationship(
        back_populates="message", cascade="all, delete-orphan"
    )


class SystemMessageRecipient(Base):
    """Read marker for a system message, one row per intended recipient."""

    __tablename__ = "system_message_recipients"
    __table_args__ = (
        UniqueConstraint("message_id", "user_id", name="uq_system_message_recipient"),
        Index("ix_system_recipients_user_unread", "user_id", "is_read"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    message_id: Mapped[int] = mapped_column(
        ForeignKey("system_messages.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    message: Mapped[SystemMessage] = relationship(back_populates="recipients")
    user: Mapped[User] = relationship(back_populates="system_inbox")


class ProjectChat(Base):
    """Group chat of a project, created lazily with the first message."""

    __tablename__ = "project_chats"

    id: Mapped[int] = mapped_column(primary_key=True)
    project_id: Mapped[int] = mapped_column(
        ForeignKey("projects.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    project: Mapped[Project] = relationship(back_populates="chat")
    messages: Mapped[list["ProjectMessage"]] = relationship(
        back_populates="chat", cascade="all, delete-orphan", order_by="ProjectMessage.created_at"
    )


class ProjectMessage(Base):
    """Message posted to a project's group chat."""

    __tablename__ = "project_messages"
    __table_args__ = (Index("ix_project_messages_chat_created_at", "chat_id", "created_at"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    chat_id: Mapped[int] = mapped_column(
        ForeignKey("project_chats.id", ondelete="CASCADE"), nullable=False
    )
    sender_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    chat: Mapped[ProjectChat] = relationship(back_populates="messages")
    sender: Mapped[User] = relationship(foreign_keys=[sender_id])
    reads: Mapped[list["ProjectMessageRead"]] = relationship(
        back_populates="message", cascade="all, delete-orphan"
    )

    @property
    def project_id(self) -> int:
        return self.chat.project_id


class ProjectMessageRead(Base):
    """Append-only read receipt; absence of a row means unread."""

    __tablename__ = "project_message_reads"
    __table_args__ = (
        UniqueConstraint("message_id", "user_id", name="uq_project_message_read"),
        Index("ix_project_reads_user", "user_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    message_id: Mapped[int] = mapped_column(
        ForeignKey("project_messages.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    read_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    message: Mapped[ProjectMessage] = relationship(back_populates="reads")


class PrivateConversation(Base):
    """Two-party thread, optionally scoped to a project context.

    Participants are stored normalized so that ``participant_a_id`` is always
    the smaller id and an unordered pair maps to a single row.
    """

    __tablename__ = "private_conversations"
    __table_args__ = (
        UniqueConstraint(
            "participant_a_id", "participant_b_id", "project_id", name="uq_private_conversation_pair"
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    participant_a_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    participant_b_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    project_id: Mapped[int | None] = mapped_column(
        ForeignKey("projects.id", ondelete="CASCADE"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    last_message_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    participant_a: Mapped[User] = relationship(foreign_keys=[participant_a_id])
    participant_b: Mapped[User] = relationship(foreign_keys=[participant_b_id])
    messages: Mapped[list["PrivateMessage"]] = relationship(
        back_populates="conversation", cascade="all, delete-orphan", order_by="PrivateMessage.created_at"
    )

    def has_user(self, user_id: int) -> bool:
        return user_id in (self.participant_a_id, self.participant_b_id)

    def other_participant(self, user_id: int) -> int:
        return self.participant_b_id if user_id == self.participant_a_id else self.participant_a_id


class PrivateMessage(Base):
    """Message in a private conversation; read state is kept on the row."""

    __tablename__ = "private_messages"
    __table_args__ = (
        Index("ix_private_messages_conversation", "conversation_id", "created_at"),
        Index("ix_private_messages_receiver_unread", "receiver_id", "is_read"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    conversation_id: Mapped[int] = mapped_column(
        ForeignKey("private_conversations.id", ondelete="CASCADE"), nullable=False
    )
    sender_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    receiver_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    conversation: Mapped[PrivateConversation] = relationship(back_populates="messages")
    sender: Mapped[User] = relationship(foreign_keys=[sender_id])
    receiver: Mapped[User] = relationship(foreign_keys=[receiver_id])


class MessageNotification(Base):
    """Per-recipient notification flag raised for chat messages."""

    __tablename__ = "message_notifications"
    __table_args__ = (
        UniqueConstraint("kind", "message_id", "user_id", name="uq_message_notification"),
        Index("ix_notifications_user_unread", "user_id", "is_read"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    kind: Mapped[MessageKind] = mapped_column(
        SAEnum(MessageKind, name="message_kind", values_callable=_enum_values),
        nullable=False,
    )
    message_id: Mapped[int] = mapped_column(nullable=False)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    is_read: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    read_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )
