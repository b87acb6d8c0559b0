"""RedisSessionStore against a mocked redis client."""

import json
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, call

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError

from authgate.service.tokens import TokenScope
from authgate.storage.common import encode_session
from authgate.storage.errors import SessionNotFound, SessionStoreError
from authgate.storage.models import Session
from authgate.storage.redis_cache import RedisSessionStore

TOKEN = "ABCDEFGHIJKLMNOPQRSTUVWXYZ"


@pytest.fixture
def client():
    return MagicMock()


@pytest.fixture
def store(client):
    return RedisSessionStore("redis://localhost:6379/0", client=client)


def _session():
    return Session(user_id=7, email="u@example.com", permissions={"b", "a"}, activated=True)


def _payload(expires_in=timedelta(minutes=5)):
    return encode_session(_session(), datetime.now(timezone.utc) + expires_in)


def test_store_session_writes_record_with_ttl_and_index(store, client):
    store.store_session(TOKEN, TokenScope.AUTHENTICATION, _session())

    key, payload = client.set.call_args.args
    assert key == f"authentication:token:{TOKEN}"
    assert client.set.call_args.kwargs["ex"] == 600
    data = json.loads(payload)
    assert data["user_id"] == 7
    assert data["permissions"] == ["a", "b"]
    assert data["activated"] is True
    assert "expires_at" in data
    client.sadd.assert_called_once_with("user:7:authentication:sessions", TOKEN)


def test_refresh_scope_uses_four_day_ttl(store, client):
    store.store_session(TOKEN, TokenScope.REFRESH, _session())

    assert client.set.call_args.kwargs["ex"] == 4 * 24 * 3600
    client.sadd.assert_called_once_with("user:7:refresh:sessions", TOKEN)


def test_store_session_wraps_backend_errors(store, client):
    client.set.side_effect = RedisConnectionError("down")

    with pytest.raises(SessionStoreError) as excinfo:
        store.store_session(TOKEN, TokenScope.AUTHENTICATION, _session())
    assert isinstance(excinfo.value.cause, RedisConnectionError)


def test_store_session_rejects_unknown_scope(store, client):
    with pytest.raises(SessionStoreError):
        store.store_session(TOKEN, 4, _session())
    client.set.assert_not_called()


def test_get_session_round_trip(store, client):
    client.get.return_value = _payload()

    session = store.get_session(TOKEN, TokenScope.AUTHENTICATION)

    client.get.assert_called_once_with(f"authentication:token:{TOKEN}")
    assert session == _session()


def test_get_session_missing_is_not_found(store, client):
    client.get.return_value = None

    with pytest.raises(SessionNotFound):
        store.get_session(TOKEN, TokenScope.AUTHENTICATION)


def test_get_session_past_embedded_expiry_is_not_found(store, client):
    client.get.return_value = _payload(expires_in=timedelta(seconds=-1))

    with pytest.raises(SessionNotFound):
        store.get_session(TOKEN, TokenScope.AUTHENTICATION)


def test_get_session_backend_error_is_not_not_found(store, client):
    client.get.side_effect = RedisError("timeout")

    with pytest.raises(SessionStoreError):
        store.get_session(TOKEN, TokenScope.AUTHENTICATION)


def test_get_session_corrupt_record(store, client):
    client.get.return_value = "{not json"

    with pytest.raises(SessionStoreError):
        store.get_session(TOKEN, TokenScope.AUTHENTICATION)


def test_delete_session_removes_record_and_index(store, client):
    client.get.return_value = _payload()

    store.delete_session(TOKEN)

    client.delete.assert_called_once_with(f"authentication:token:{TOKEN}")
    client.srem.assert_called_once_with("user:7:authentication:sessions", TOKEN)


def test_delete_session_not_found(store, client):
    client.get.return_value = None

    with pytest.raises(SessionNotFound):
        store.delete_session(TOKEN)
    client.delete.assert_not_called()


def test_delete_session_tolerates_index_cleanup_failure(store, client):
    client.get.return_value = _payload()
    client.srem.side_effect = RedisError("boom")

    store.delete_session(TOKEN)

    client.delete.assert_called_once()


def test_delete_all_sessions_for_user(store, client):
    client.smembers.return_value = {"AAA", "BBB"}

    store.delete_all_sessions_for_user(7, TokenScope.REFRESH)

    client.smembers.assert_called_once_with("user:7:refresh:sessions")
    client.delete.assert_has_calls(
        [call("refresh:token:AAA"), call("refresh:token:BBB")], any_order=True
    )
    assert client.delete.call_args_list[-1] == call("user:7:refresh:sessions")


def test_delete_all_ignores_individual_failures(store, client):
    client.smembers.return_value = {"AAA", "BBB"}

    def _delete(key):
        if key == "refresh:token:AAA":
            raise RedisError("partial")
        return 1

    client.delete.side_effect = _delete

    store.delete_all_sessions_for_user(7, TokenScope.REFRESH)

    assert call("user:7:refresh:sessions") in client.delete.call_args_list


def test_delete_all_with_empty_index_is_noop(store, client):
    client.smembers.return_value = set()

    store.delete_all_sessions_for_user(7, TokenScope.AUTHENTICATION)

    client.delete.assert_not_called()


def test_delete_all_index_read_failure(store, client):
    client.smembers.side_effect = RedisError("down")

    with pytest.raises(SessionStoreError):
        store.delete_all_sessions_for_user(7, TokenScope.AUTHENTICATION)


def test_verify_connection_pings(store, client):
    store.verify_connection()
    client.ping.assert_called_once_with()
