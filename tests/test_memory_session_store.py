"""Session store semantics against the in-process backend."""

import pytest

from authgate.service.tokens import TokenScope, generate_token
from authgate.storage.errors import ConstraintViolation, SessionNotFound, SessionStoreError
from authgate.storage.memory import MemorySessionStore, MemoryStore
from authgate.storage.models import Session


@pytest.fixture
def store(fake_clock):
    return MemorySessionStore(clock=fake_clock)


def _session(user_id=5, **kwargs):
    return Session(user_id=user_id, email=f"user{user_id}@example.com", **kwargs)


@pytest.mark.parametrize("scope", list(TokenScope))
def test_store_then_get_returns_same_session(store, scope):
    token = generate_token(5, scope)
    stored = _session(permissions={"articles:write"}, activated=True)

    store.store_session(token.plaintext, scope, stored)
    loaded = store.get_session(token.plaintext, scope)

    assert loaded == stored


def test_get_unknown_token_is_not_found(store):
    with pytest.raises(SessionNotFound):
        store.get_session("A" * 26, TokenScope.AUTHENTICATION)


def test_scopes_are_separate_namespaces(store):
    store.store_session("T" * 26, TokenScope.REFRESH, _session())

    with pytest.raises(SessionNotFound):
        store.get_session("T" * 26, TokenScope.AUTHENTICATION)


def test_expired_record_is_not_found(store, fake_clock):
    store.store_session("E" * 26, TokenScope.AUTHENTICATION, _session())

    fake_clock.advance(minutes=9, seconds=59)
    assert store.get_session("E" * 26, TokenScope.AUTHENTICATION).user_id == 5

    fake_clock.advance(seconds=1)
    with pytest.raises(SessionNotFound):
        store.get_session("E" * 26, TokenScope.AUTHENTICATION)


def test_refresh_scope_lives_four_days(store, fake_clock):
    store.store_session("R" * 26, TokenScope.REFRESH, _session())

    fake_clock.advance(days=3, hours=23)
    assert store.get_session("R" * 26, TokenScope.REFRESH)

    fake_clock.advance(hours=1)
    with pytest.raises(SessionNotFound):
        store.get_session("R" * 26, TokenScope.REFRESH)


def test_store_adds_to_user_index(store):
    store.store_session("A" * 26, TokenScope.AUTHENTICATION, _session())
    store.store_session("B" * 26, TokenScope.AUTHENTICATION, _session())

    assert store.index_members(5, TokenScope.AUTHENTICATION) == {"A" * 26, "B" * 26}
    assert store.index_members(5, TokenScope.REFRESH) == set()


def test_delete_all_sessions_for_user(store):
    tokens = [generate_token(5, TokenScope.AUTHENTICATION).plaintext for _ in range(3)]
    for token in tokens:
        store.store_session(token, TokenScope.AUTHENTICATION, _session())
    store.store_session("K" * 26, TokenScope.AUTHENTICATION, _session(user_id=6))

    store.delete_all_sessions_for_user(5, TokenScope.AUTHENTICATION)

    for token in tokens:
        with pytest.raises(SessionNotFound):
            store.get_session(token, TokenScope.AUTHENTICATION)
    assert store.index_members(5, TokenScope.AUTHENTICATION) == set()
    # Other users untouched
    assert store.get_session("K" * 26, TokenScope.AUTHENTICATION).user_id == 6


def test_delete_all_is_noop_when_index_empty(store):
    store.delete_all_sessions_for_user(5, TokenScope.REFRESH)
    store.delete_all_sessions_for_user(5, TokenScope.REFRESH)


def test_delete_all_tolerates_stale_index_entries(store, fake_clock):
    store.store_session("S" * 26, TokenScope.AUTHENTICATION, _session())
    fake_clock.advance(hours=1)

    store.delete_all_sessions_for_user(5, TokenScope.AUTHENTICATION)

    assert store.index_members(5, TokenScope.AUTHENTICATION) == set()


def test_delete_session_removes_record_and_index_entry(store):
    store.store_session("D" * 26, TokenScope.AUTHENTICATION, _session())
    store.store_session("F" * 26, TokenScope.AUTHENTICATION, _session())

    store.delete_session("D" * 26)

    with pytest.raises(SessionNotFound):
        store.get_session("D" * 26, TokenScope.AUTHENTICATION)
    assert store.index_members(5, TokenScope.AUTHENTICATION) == {"F" * 26}


def test_delete_session_only_tries_authentication_scope(store):
    store.store_session("G" * 26, TokenScope.REFRESH, _session())

    with pytest.raises(SessionNotFound):
        store.delete_session("G" * 26)
    assert store.get_session("G" * 26, TokenScope.REFRESH)


def test_invalid_scope_is_a_store_error(store):
    with pytest.raises(SessionStoreError):
        store.store_session("H" * 26, 9, _session())
    with pytest.raises(SessionStoreError):
        store.get_session("H" * 26, 9)
    with pytest.raises(SessionStoreError):
        store.delete_all_sessions_for_user(5, 9)


class TestMemoryStore:
    def test_create_and_lookup_user(self):
        store = MemoryStore()
        user = store.create_user("Alice@Example.com", "Alice", permissions=["articles:write"])

        assert user.id == 1
        assert user.email == "alice@example.com"
        assert not user.activated
        assert store.get_user_by_email("ALICE@example.com") is user
        assert store.get_permissions(user.id) == frozenset({"articles:write"})

    def test_duplicate_email_is_constraint_violation(self):
        store = MemoryStore()
        store.create_user("bob@example.com")

        with pytest.raises(ConstraintViolation):
            store.create_user("bob@example.com")

    def test_ids_increase(self):
        store = MemoryStore()
        first = store.create_user("a@example.com")
        second = store.create_user("b@example.com")

        assert second.id == first.id + 1

    def test_activate_and_delete(self):
        store = MemoryStore()
        user = store.create_user("c@example.com")
        store.save_password(user.id, "hash", "argon2id")

        assert store.set_activated(user.id, True).activated
        assert store.delete_user(user.id)
        assert store.get_user(user.id) is None
        assert store.get_password_record(user.id) is None
        assert not store.delete_user(user.id)
        assert store.set_activated(user.id, True) is None
