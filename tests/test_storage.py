import uuid
from datetime import timedelta
from pathlib import Path

import pytest
from psycopg import errors

from eduauth.storage.errors import ConstraintViolation, RecordNotFound
from eduauth.storage.memory import MemoryStore
from eduauth.storage.models import Session, utcnow
from eduauth.storage.postgres import PostgresStore


def _user(store, email="ada@example.com", **kwargs):
    return store.create_user(
        email,
        "Ada",
        "Lovelace",
        role=kwargs.pop("role", "STUDENT"),
        password_hash="hash",
        password_algo="argon2id",
        **kwargs,
    )


class TestMemoryStore:
    def test_state_survives_reload(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        user = _user(store, role="INSTRUCTOR")
        session = Session.new(user.id, "token-1", 3600, device_type="desktop")
        store.record_login(user.id, session, mark_verified=True)
        store.create_reactivation_request(user.id, "Please restore my account")

        reloaded = MemoryStore(fs_root=str(tmp_path))
        again = reloaded.get_user(user.id)
        assert again.role == "INSTRUCTOR"
        assert again.is_verified is True
        assert again.last_login == session.created_at
        assert reloaded.get_password_record(user.id) == ("hash", "argon2id")
        assert reloaded.get_role_profile(user.id).role == "INSTRUCTOR"
        assert reloaded.get_session_by_token("token-1").device_type == "desktop"
        assert reloaded.get_latest_reactivation_request(user.id).status == "PENDING"

    def test_email_is_unique(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        first = _user(store)
        with pytest.raises(ConstraintViolation):
            _user(store)
        other = _user(store, email="grace@example.com")
        with pytest.raises(ConstraintViolation):
            store.update_user(other.id, email=first.email)

    def test_update_rejects_unknown_fields(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        user = _user(store)
        with pytest.raises(ValueError):
            store.update_user(user.id, password_hash="nope")
        with pytest.raises(RecordNotFound):
            store.update_user(str(uuid.uuid4()), is_active=False)

    def test_returned_records_are_copies(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        user = _user(store)
        user.is_banned = True
        assert store.get_user(user.id).is_banned is False

    def test_session_deactivation(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        user = _user(store)
        for token in ("a", "b", "c"):
            store.create_session(Session.new(user.id, token, 3600))

        assert store.deactivate_session("a") is True
        assert store.deactivate_session("a") is False
        assert store.deactivate_user_sessions(user.id, except_token="c") == 1
        assert [s.token for s in store.list_user_sessions(user.id)] == ["c"]
        assert len(store.list_user_sessions(user.id, active_only=False)) == 3

    def test_duplicate_session_token_is_refused(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        user = _user(store)
        store.create_session(Session.new(user.id, "dup", 60))
        with pytest.raises(ConstraintViolation):
            store.create_session(Session.new(user.id, "dup", 60))

    def test_delete_session_is_single_shot(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        user = _user(store)
        store.create_session(Session.new(user.id, "code", 300, device_type="temp_auth_code"))
        assert store.delete_session("code") is True
        assert store.delete_session("code") is False

    def test_recent_sessions_window(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        user = _user(store)
        old = Session.new(user.id, "old", 3600)
        old.created_at = utcnow() - timedelta(days=2)
        store.create_session(old)
        store.create_session(Session.new(user.id, "new", 3600))
        recent = store.list_recent_sessions(user.id, utcnow() - timedelta(hours=24))
        assert [s.token for s in recent] == ["new"]

    def test_admin_lookup_skips_inactive(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        active = _user(store, email="a@example.com", role="ADMIN")
        banned = _user(store, email="b@example.com", role="ADMIN")
        store.update_user(banned.id, is_banned=True)
        _user(store, email="c@example.com")
        assert store.list_user_ids_by_role("ADMIN") == [active.id]

    def test_oauth_user_and_provider_links(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        user = store.create_oauth_user(
            "grace@example.com", "Grace", "Hopper", role="STUDENT", provider="google", provider_user_id="g-1"
        )
        assert user.is_verified is True
        assert store.get_password_record(user.id) is None
        assert store.link_user_auth_provider(user.id, "google", "g-1") is False
        assert store.link_user_auth_provider(user.id, "github", "42") is True
        assert {p.provider for p in store.list_user_auth_providers(user.id)} == {"google", "github"}


class FakeCursor:
    def __init__(self, row):
        self._row = row

    def fetchone(self):
        return self._row

    def fetchall(self):
        return [self._row] if self._row else []


class FakeConnection:
    def __init__(self, row=None, error=None):
        self.row = row
        self.error = error
        self.statements = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=None):
        self.statements.append((" ".join(sql.split()), params))
        if self.error:
            raise self.error
        return FakeCursor(self.row)


def _bare_store(tmp_path: Path, conn: FakeConnection) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.fs_root = tmp_path
    store._connect = lambda: conn
    return store


def _user_row(**overrides):
    now = utcnow()
    row = {
        "id": uuid.uuid4(),
        "email": "ada@example.com",
        "first_name": "Ada",
        "last_name": "Lovelace",
        "role": "STUDENT",
        "is_verified": True,
        "is_active": True,
        "is_banned": False,
        "banned_at": None,
        "ban_reason": None,
        "last_login": None,
        "profile_image": None,
        "profile_image_id": None,
        "created_at": now,
        "updated_at": now,
    }
    row.update(overrides)
    return row


class TestPostgresStoreUnit:
    def test_update_user_builds_assignments(self, tmp_path):
        row = _user_row(is_active=False)
        conn = FakeConnection(row=row)
        store = _bare_store(tmp_path, conn)

        user = store.update_user(str(row["id"]), is_active=False, first_name="Ada")
        assert user.id == str(row["id"])
        assert user.is_active is False
        sql, params = conn.statements[0]
        assert sql.startswith("UPDATE app_user SET is_active = %s, first_name = %s, updated_at = %s")
        assert params[0] is False and params[1] == "Ada" and params[-1] == str(row["id"])

    def test_update_user_rejects_unknown_columns_without_querying(self, tmp_path):
        conn = FakeConnection()
        store = _bare_store(tmp_path, conn)
        with pytest.raises(ValueError):
            store.update_user("id", **{"email = 'x'; --": "boom"})
        assert conn.statements == []

    def test_unique_violation_maps_to_constraint(self, tmp_path):
        conn = FakeConnection(error=errors.UniqueViolation("duplicate key"))
        store = _bare_store(tmp_path, conn)
        with pytest.raises(ConstraintViolation) as excinfo:
            store.update_user("id", email="taken@example.com")
        assert excinfo.value.detail == {"field": "email"}

    def test_missing_user_raises(self, tmp_path):
        store = _bare_store(tmp_path, FakeConnection(row=None))
        with pytest.raises(RecordNotFound):
            store.update_user("id", is_active=False)

    def test_session_row_mapping(self):
        now = utcnow()
        session = PostgresStore._session_from_row(
            {
                "id": uuid.uuid4(),
                "user_id": uuid.uuid4(),
                "token": "tok",
                "created_at": now,
                "expires_at": now + timedelta(hours=1),
                "last_activity": now,
                "device_type": "mobile",
                "ip_address": "10.0.0.1",
                "is_active": True,
            }
        )
        assert session.is_live()
        assert session.operating_system is None
        assert isinstance(session.user_id, str)
