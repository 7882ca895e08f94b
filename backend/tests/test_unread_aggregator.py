from __future__ import annotations

from datetime import datetime, timedelta, timezone

from sqlalchemy import update

from app.models import MessageKind, ProjectChat, ProjectMessage
from app.monitoring.metrics import unread_snapshots_total
from app.services.messaging import (
    get_or_create_conversation,
    post_private_message,
    post_project_message,
    post_system_message,
    soft_delete_message,
)
from app.services.read_state import mark_all_read, mark_read
from app.services.unread import (
    UnreadSnapshot,
    build_preview,
    clamp_recent_limit,
    conversation_unread,
    get_unread_snapshot,
    recent_unread,
)


def _private_message(db, sender, receiver, content="hello"):
    conversation, _ = get_or_create_conversation(db, sender, receiver.id)
    return post_private_message(db, sender, conversation.id, content).message


def test_unknown_user_gets_zero_snapshot(db_session) -> None:
    snapshot = get_unread_snapshot(9999, db_session)

    assert snapshot == UnreadSnapshot()
    assert snapshot.total == 0
    assert unread_snapshots_total.value() == 1.0


def test_private_message_counts_for_receiver_until_read(db_session, make_user) -> None:
    sender = make_user("xavier")
    receiver = make_user("yvonne")

    message = _private_message(db_session, sender, receiver)

    assert get_unread_snapshot(receiver.id, db_session).private == 1
    assert get_unread_snapshot(sender.id, db_session).private == 0

    mark_read(receiver.id, MessageKind.PRIVATE, message.id, db_session)

    snapshot = get_unread_snapshot(receiver.id, db_session)
    assert snapshot.private == 0
    assert snapshot.total == 0


def test_system_broadcast_is_counted_per_recipient(db_session, make_user) -> None:
    admin = make_user("admin")
    a, b, c = make_user("alice"), make_user("bob"), make_user("carol")

    post_system_message(
        db_session,
        admin,
        title="Maintenance",
        content="Downtime tonight",
        recipient_ids=[a.id, b.id, c.id],
    )

    for user in (a, b, c):
        assert get_unread_snapshot(user.id, db_session).system == 1
    assert get_unread_snapshot(admin.id, db_session).system == 0

    result = mark_all_read(a.id, MessageKind.SYSTEM, db_session)

    assert result.marked_count == 1
    assert get_unread_snapshot(a.id, db_session).system == 0
    assert get_unread_snapshot(b.id, db_session).system == 1
    assert get_unread_snapshot(c.id, db_session).system == 1


def test_project_messages_exclude_own_posts(db_session, make_user, make_project) -> None:
    u1, u2 = make_user("first"), make_user("second")
    project = make_project("Apollo", u1, u2)

    message = post_project_message(db_session, u1, project.id, "Kickoff at ten").message

    assert get_unread_snapshot(u2.id, db_session).project == 1
    assert get_unread_snapshot(u1.id, db_session).project == 0

    mark_read(u2.id, MessageKind.PROJECT, message.id, db_session)

    assert get_unread_snapshot(u2.id, db_session).project == 0


def test_project_messages_require_active_membership(db_session, make_user, make_project) -> None:
    author, former = make_user("author"), make_user("former")
    project = make_project("Gemini", author, inactive=(former,))

    post_project_message(db_session, author, project.id, "Status update")

    assert get_unread_snapshot(former.id, db_session).project == 0


def test_soft_deleted_messages_do_not_count(db_session, make_user, make_project) -> None:
    admin, member = make_user("admin"), make_user("member")
    project = make_project("Mercury", admin, member)

    system = post_system_message(db_session, admin, title="Hi", content="Hello", recipient_ids=[member.id])
    project_message = post_project_message(db_session, admin, project.id, "Ping").message
    private_message = _private_message(db_session, admin, member)

    assert get_unread_snapshot(member.id, db_session).total == 3

    soft_delete_message(db_session, admin, MessageKind.SYSTEM, system.message.id)
    soft_delete_message(db_session, admin, MessageKind.PROJECT, project_message.id)
    soft_delete_message(db_session, admin, MessageKind.PRIVATE, private_message.id)

    assert get_unread_snapshot(member.id, db_session) == UnreadSnapshot()


def test_total_is_sum_of_breakdown(db_session, make_user, make_project) -> None:
    admin, member = make_user("admin"), make_user("member")
    project = make_project("Vostok", admin, member)

    post_system_message(db_session, admin, title="One", content="First", recipient_ids=[member.id])
    post_system_message(db_session, admin, title="Two", content="Second", recipient_ids=[member.id])
    post_project_message(db_session, admin, project.id, "Project note")
    _private_message(db_session, admin, member)

    snapshot = get_unread_snapshot(member.id, db_session)

    assert (snapshot.system, snapshot.project, snapshot.private) == (2, 1, 1)
    assert snapshot.total == 4
    assert snapshot.as_dict() == {"total": 4, "breakdown": {"system": 2, "project": 1, "private": 1}}


def test_global_broadcast_skips_sender_and_inactive_users(db_session, make_user) -> None:
    admin = make_user("admin")
    active = make_user("active")
    dormant = make_user("dormant", is_active=False)

    posted = post_system_message(db_session, admin, title="All hands", content="Friday", is_global=True)

    assert posted.recipient_ids == (active.id,)
    assert get_unread_snapshot(active.id, db_session).system == 1
    assert get_unread_snapshot(dormant.id, db_session).system == 0
    assert get_unread_snapshot(admin.id, db_session).system == 0


def test_build_preview_truncates_long_content() -> None:
    assert build_preview("short") == "short"
    assert build_preview("x" * 50) == "x" * 50
    assert build_preview("y" * 51) == "y" * 50 + "..."


def test_clamp_recent_limit_bounds() -> None:
    assert clamp_recent_limit(None) == 5
    assert clamp_recent_limit(0) == 1
    assert clamp_recent_limit(500) == 50
    assert clamp_recent_limit(7) == 7


def test_recent_unread_merges_kinds_newest_first(db_session, make_user, make_project) -> None:
    admin, member = make_user("admin"), make_user("member")
    project = make_project("Orion", admin, member)
    base = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    system = post_system_message(
        db_session, admin, title="Notice", content="Read the handbook", recipient_ids=[member.id]
    ).message
    project_message = post_project_message(db_session, admin, project.id, "z" * 80).message
    private_message = _private_message(db_session, admin, member, "Lunch?")

    system.created_at = base
    project_message.created_at = base + timedelta(minutes=5)
    private_message.created_at = base + timedelta(minutes=10)
    db_session.commit()

    items = recent_unread(member.id, 5, db_session)

    assert [item.kind for item in items] == [MessageKind.PRIVATE, MessageKind.PROJECT, MessageKind.SYSTEM]
    private_item, project_item, system_item = items
    assert private_item.source == "Private message"
    assert private_item.conversation_id == f"private:{private_message.conversation_id}"
    assert project_item.source == "Project: Orion"
    assert project_item.preview == "z" * 50 + "..."
    assert project_item.conversation_id == f"project:{project.id}"
    assert system_item.source == "System message"
    assert system_item.conversation_id == f"inbox:{member.id}"
    assert system_item.sender == {"id": admin.id, "name": admin.name, "email": admin.email}


def test_recent_unread_respects_limit_and_per_kind_share(db_session, make_user) -> None:
    admin, member = make_user("admin"), make_user("member")
    for index in range(6):
        post_system_message(
            db_session, admin, title=f"Notice {index}", content=f"Body {index}", recipient_ids=[member.id]
        )

    items = recent_unread(member.id, 4, db_session)

    # system messages contribute at most half of the requested limit
    assert len(items) == 2
    assert all(item.kind is MessageKind.SYSTEM for item in items)
    assert recent_unread(member.id, 1, db_session)[0].id == items[0].id


def test_recent_unread_is_empty_for_caught_up_user(db_session, make_user) -> None:
    user = make_user()

    assert recent_unread(user.id, None, db_session) == []


def test_conversation_unread_counts_each_conversation(db_session, make_user, make_project) -> None:
    lead, dev = make_user("lead"), make_user("dev")
    project = make_project("Apollo", lead, dev)
    post_project_message(db_session, lead, project.id, "kickoff")
    post_project_message(db_session, lead, project.id, "agenda")
    own = post_project_message(db_session, dev, project.id, "ack").message
    hour_ago = datetime.now(timezone.utc) - timedelta(hours=1)
    db_session.execute(update(ProjectMessage).values(created_at=hour_ago))
    db_session.execute(update(ProjectChat).values(created_at=hour_ago))
    db_session.commit()
    private = _private_message(db_session, lead, dev, "ping")

    rows = conversation_unread(dev.id, db_session)

    assert [row.conversation_id for row in rows] == [
        f"private:{private.conversation_id}",
        f"project:{project.id}",
    ]
    private_row, project_row = rows
    assert (private_row.kind, private_row.name, private_row.unread_count) == (MessageKind.PRIVATE, "Lead", 1)
    assert private_row.last_message.content == "ping"
    assert (project_row.kind, project_row.name, project_row.unread_count) == (MessageKind.PROJECT, "Apollo", 2)
    assert project_row.last_message.id == own.id

    snapshot = get_unread_snapshot(dev.id, db_session)
    assert snapshot.project == project_row.unread_count
    assert snapshot.private == private_row.unread_count

    lead_rows = {row.kind: row for row in conversation_unread(lead.id, db_session)}
    assert lead_rows[MessageKind.PROJECT].unread_count == 1
    assert lead_rows[MessageKind.PRIVATE].unread_count == 0
    assert lead_rows[MessageKind.PRIVATE].name == "Dev"


def test_conversation_unread_filters_by_kind_and_skips_deleted_last_message(
    db_session, make_user, make_project
) -> None:
    lead, dev, former = make_user("lead"), make_user("dev"), make_user("former")
    project = make_project("Gemini", lead, dev, inactive=(former,))
    first = post_project_message(db_session, lead, project.id, "first").message
    last = post_project_message(db_session, lead, project.id, "second").message
    _private_message(db_session, dev, lead)

    soft_delete_message(db_session, lead, MessageKind.PROJECT, last.id)
    [row] = conversation_unread(dev.id, db_session, kind=MessageKind.PROJECT)

    assert row.unread_count == 1
    assert row.last_message.id == first.id
    assert [row.kind for row in conversation_unread(dev.id, db_session, kind=MessageKind.PRIVATE)] == [
        MessageKind.PRIVATE
    ]
    assert conversation_unread(former.id, db_session) == []
