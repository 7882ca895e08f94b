from __future__ import annotations

import pytest

from app.services.errors import ForbiddenError, MessageValidationError, NotFoundError
from app.services.messaging import get_or_create_conversation
from app.services.permissions import ConversationRef, can_subscribe, require_participant


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("project:4", ConversationRef("project", 4)),
        (" private:12 ", ConversationRef("private", 12)),
        ("inbox:1", ConversationRef("inbox", 1)),
    ],
)
def test_conversation_ref_parses_known_scopes(raw, expected) -> None:
    ref = ConversationRef.parse(raw)

    assert ref == expected
    assert str(ref) == raw.strip()


@pytest.mark.parametrize("raw", ["", "project", "room:1", "project:abc", "private:0", "inbox:-3"])
def test_conversation_ref_rejects_garbage(raw) -> None:
    with pytest.raises(MessageValidationError):
        ConversationRef.parse(raw)


def test_subscribe_rules(db_session, make_user, make_project) -> None:
    alice, bob, eve = make_user("alice"), make_user("bob"), make_user("eve")
    project = make_project("Kepler", alice, bob, inactive=(eve,))
    conversation, _ = get_or_create_conversation(db_session, alice, bob.id)

    assert can_subscribe(ConversationRef.inbox(alice.id), alice.id, db_session)
    assert not can_subscribe(ConversationRef.inbox(alice.id), bob.id, db_session)
    assert can_subscribe(ConversationRef.project(project.id), bob.id, db_session)
    assert not can_subscribe(ConversationRef.project(project.id), eve.id, db_session)
    assert can_subscribe(ConversationRef.private(conversation.id), bob.id, db_session)
    assert not can_subscribe(ConversationRef.private(conversation.id), eve.id, db_session)
    assert not can_subscribe(ConversationRef.private(999), alice.id, db_session)


def test_conversation_pair_is_normalized(db_session, make_user) -> None:
    alice, bob = make_user("alice"), make_user("bob")

    first, created = get_or_create_conversation(db_session, bob, alice.id)
    second, created_again = get_or_create_conversation(db_session, alice, bob.id)

    assert created and not created_again
    assert first.id == second.id
    assert (first.participant_a_id, first.participant_b_id) == (alice.id, bob.id)


def test_project_scoped_conversation_requires_both_members(db_session, make_user, make_project) -> None:
    alice, bob, carol = make_user("alice"), make_user("bob"), make_user("carol")
    project = make_project("Hubble", alice, bob)

    scoped, _ = get_or_create_conversation(db_session, alice, bob.id, project.id)
    unscoped, _ = get_or_create_conversation(db_session, alice, bob.id)

    assert scoped.id != unscoped.id
    with pytest.raises(ForbiddenError):
        get_or_create_conversation(db_session, alice, carol.id, project.id)
    with pytest.raises(NotFoundError):
        get_or_create_conversation(db_session, alice, 404)


def test_require_participant(db_session, make_user) -> None:
    alice, bob, eve = make_user("alice"), make_user("bob"), make_user("eve")
    conversation, _ = get_or_create_conversation(db_session, alice, bob.id)

    assert require_participant(conversation.id, bob.id, db_session).id == conversation.id
    with pytest.raises(ForbiddenError):
        require_participant(conversation.id, eve.id, db_session)
    with pytest.raises(NotFoundError):
        require_participant(999, alice.id, db_session)
