from datetime import datetime, timezone
from pathlib import Path
from types import SimpleNamespace

import pytest
from psycopg import errors

from commonroom.storage.errors import ConstraintViolation, MissingReference
from commonroom.storage.postgres import PostgresStore

NOW = datetime(2024, 5, 1, tzinfo=timezone.utc)


class FakeResult:
    def __init__(self, rows):
        self.rows = list(rows)

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return self.rows


class FakeConnection:
    def __init__(self, handler):
        self.handler = handler

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=None):
        return FakeResult(self.handler(sql, params))


class FakePool:
    def __init__(self, handler):
        self.handler = handler
        self.closed = False

    def connection(self):
        return FakeConnection(self.handler)

    def close(self):
        self.closed = True


def _store(tmp_path: Path, handler) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://unit-test"
    store.fs_root = tmp_path
    store.pool = FakePool(handler)
    store.logger = SimpleNamespace(info=lambda *a, **k: None, warning=lambda *a, **k: None)
    return store


def _raising(exc):
    def handler(sql, params):
        raise exc

    return handler


def _with_constraint(exc_type, constraint):
    class _Violation(exc_type):
        @property
        def diag(self):
            return SimpleNamespace(constraint_name=constraint)

    return _Violation("violation")


def test_get_user_with_uncastable_id_is_none(tmp_path):
    store = _store(tmp_path, _raising(errors.InvalidTextRepresentation("bad int")))
    assert store.get_user("not-a-number") is None


def test_get_user_maps_row(tmp_path):
    row = {
        "id": 5,
        "username": "aki",
        "email": "aki@example.com",
        "role": "member_ja",
        "bio": None,
        "avatar_url": None,
        "created_at": NOW,
    }
    store = _store(tmp_path, lambda sql, params: [row])
    user = store.get_user(5)
    assert (user.id, user.username, user.role) == (5, "aki", "member_ja")


def test_duplicate_username_maps_to_constraint_violation(tmp_path):
    exc = _with_constraint(errors.UniqueViolation, "app_user_username_key")
    store = _store(tmp_path, _raising(exc))
    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_user("aki", "aki@example.com")
    assert excinfo.value.detail["field"] == "username"


def test_post_for_missing_channel_maps_to_missing_reference(tmp_path):
    exc = _with_constraint(errors.ForeignKeyViolation, "post_channel_id_fkey")
    store = _store(tmp_path, _raising(exc))
    with pytest.raises(MissingReference) as excinfo:
        store.create_post(1, 42, "hello")
    assert excinfo.value.entity == "channel"


def test_study_tags_decoded_from_text(tmp_path):
    row = {
        "id": 3,
        "user_id": 1,
        "channel_id": 2,
        "content": "log",
        "created_at": NOW,
        "image_url": None,
        "is_study_log": True,
        "ai_response_enabled": True,
        "target_language": "English",
        "study_tags": '["grammar", "vocab"]',
    }
    post = PostgresStore._to_post(row)
    assert post.study_tags == ["grammar", "vocab"]
    assert post.is_study_log is True


def test_latest_ai_response_none_when_absent(tmp_path):
    store = _store(tmp_path, lambda sql, params: [])
    assert store.get_latest_ai_response(9) is None


def test_close_closes_pool(tmp_path):
    store = _store(tmp_path, lambda sql, params: [])
    store.close()
    assert store.pool.closed
