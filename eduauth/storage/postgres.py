from __future__ import annotations

import json
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from eduauth.logging import get_logger
from eduauth.storage.errors import ConstraintViolation, RecordNotFound
from eduauth.storage.models import (
    AccountDeletion,
    AuthProviderLink,
    Notification,
    ReactivationRequest,
    RoleProfile,
    Session,
    User,
    utcnow,
)

_USER_COLUMNS = {
    "email": "email",
    "first_name": "first_name",
    "last_name": "last_name",
    "role": "role",
    "is_verified": "is_verified",
    "is_active": "is_active",
    "is_banned": "is_banned",
    "banned_at": "banned_at",
    "ban_reason": "ban_reason",
    "last_login": "last_login",
    "profile_image": "profile_image",
    "profile_image_id": "profile_image_id",
}

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        first_name TEXT NOT NULL,
        last_name TEXT NOT NULL,
        role TEXT NOT NULL,
        is_verified BOOLEAN NOT NULL DEFAULT FALSE,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        is_banned BOOLEAN NOT NULL DEFAULT FALSE,
        banned_at TIMESTAMPTZ,
        ban_reason TEXT,
        last_login TIMESTAMPTZ,
        profile_image TEXT,
        profile_image_id TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS role_profile (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        role TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_provider (
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        provider TEXT NOT NULL,
        provider_uid TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (provider, provider_uid)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        token TEXT NOT NULL UNIQUE,
        device_type TEXT NOT NULL,
        operating_system TEXT,
        browser TEXT,
        ip_address TEXT,
        user_agent TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL,
        last_activity TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_user_idx ON auth_session (user_id, is_active)",
    """
    CREATE TABLE IF NOT EXISTS reactivation_request (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        reason TEXT NOT NULL,
        additional_info TEXT,
        status TEXT NOT NULL,
        ip_address TEXT,
        user_agent TEXT,
        submitted_at TIMESTAMPTZ NOT NULL,
        reviewed_at TIMESTAMPTZ,
        reviewed_by TEXT,
        rejection_reason TEXT,
        admin_notes TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS account_deletion (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        original_email TEXT NOT NULL,
        reason TEXT NOT NULL,
        ip_address TEXT,
        deleted_at TIMESTAMPTZ NOT NULL,
        recovery_expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS notification (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        type TEXT NOT NULL,
        title TEXT NOT NULL,
        message TEXT NOT NULL,
        priority TEXT NOT NULL,
        data JSONB,
        is_read BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)

_REQUIRED_TABLES = (
    "app_user",
    "user_auth_credential",
    "role_profile",
    "user_auth_provider",
    "auth_session",
    "reactivation_request",
    "account_deletion",
    "notification",
)


class PostgresStore:
    """Postgres-backed credential store."""

    def __init__(self, dsn: str, fs_root: str, *, connect_timeout: float = 10.0) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            timeout=connect_timeout,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "connect_timeout": int(connect_timeout),
            },
        )
        self._ensure_schema()
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def ping(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def _verify_required_schema(self) -> None:
        """Fail fast when a required table is missing."""

        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                f"Database schema incomplete; missing tables: {', '.join(missing_tables)}"
            )

    # ------------------------------------------------------------ row mapping

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            role=row["role"],
            is_verified=row["is_verified"],
            is_active=row["is_active"],
            is_banned=row["is_banned"],
            banned_at=row.get("banned_at"),
            ban_reason=row.get("ban_reason"),
            last_login=row.get("last_login"),
            profile_image=row.get("profile_image"),
            profile_image_id=row.get("profile_image_id"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token=row["token"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            last_activity=row["last_activity"],
            device_type=row["device_type"],
            operating_system=row.get("operating_system"),
            browser=row.get("browser"),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            is_active=row["is_active"],
        )

    @staticmethod
    def _reactivation_from_row(row: Dict[str, Any]) -> ReactivationRequest:
        return ReactivationRequest(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            reason=row["reason"],
            status=row["status"],
            additional_info=row.get("additional_info"),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            submitted_at=row["submitted_at"],
            reviewed_at=row.get("reviewed_at"),
            reviewed_by=row.get("reviewed_by"),
            rejection_reason=row.get("rejection_reason"),
            admin_notes=row.get("admin_notes"),
        )

    # ------------------------------------------------------------------ users

    def _insert_user(self, conn, user: User) -> None:
        conn.execute(
            """
            INSERT INTO app_user (id, email, first_name, last_name, role, is_verified,
                                  is_active, profile_image, profile_image_id, created_at, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                user.id,
                user.email,
                user.first_name,
                user.last_name,
                user.role,
                user.is_verified,
                user.is_active,
                user.profile_image,
                user.profile_image_id,
                user.created_at,
                user.updated_at,
            ),
        )
        conn.execute(
            "INSERT INTO role_profile (user_id, role) VALUES (%s, %s)",
            (user.id, user.role),
        )

    def create_user(
        self,
        email: str,
        first_name: str,
        last_name: str,
        *,
        role: str,
        password_hash: Optional[str] = None,
        password_algo: Optional[str] = None,
        is_verified: bool = False,
        profile_image: Optional[str] = None,
        profile_image_id: Optional[str] = None,
    ) -> User:
        user = User(
            id=str(uuid.uuid4()),
            email=email,
            first_name=first_name,
            last_name=last_name,
            role=role,
            is_verified=is_verified,
            profile_image=profile_image,
            profile_image_id=profile_image_id,
        )
        try:
            with self._connect() as conn:
                with conn.transaction():
                    self._insert_user(conn, user)
                    if password_hash:
                        conn.execute(
                            """
                            INSERT INTO user_auth_credential (user_id, password_hash, password_algo)
                            VALUES (%s, %s, %s)
                            """,
                            (user.id, password_hash, password_algo or ""),
                        )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def create_oauth_user(
        self,
        email: str,
        first_name: str,
        last_name: str,
        *,
        role: str,
        provider: str,
        provider_user_id: str,
        profile_image: Optional[str] = None,
    ) -> User:
        user = User(
            id=str(uuid.uuid4()),
            email=email,
            first_name=first_name,
            last_name=last_name,
            role=role,
            is_verified=True,
            profile_image=profile_image,
        )
        try:
            with self._connect() as conn:
                with conn.transaction():
                    self._insert_user(conn, user)
                    conn.execute(
                        """
                        INSERT INTO user_auth_provider (user_id, provider, provider_uid)
                        VALUES (%s, %s, %s)
                        """,
                        (user.id, provider, provider_user_id),
                    )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE email = %s", (email,)).fetchone()
        return self._user_from_row(row) if row else None

    def list_user_ids_by_role(self, role: str) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id FROM app_user WHERE role = %s AND is_active AND NOT is_banned",
                (role,),
            ).fetchall()
        return [row["id"] for row in rows]

    def update_user(self, user_id: str, **fields: Any) -> User:
        unknown = set(fields) - set(_USER_COLUMNS)
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        assignments = ", ".join(f"{_USER_COLUMNS[name]} = %s" for name in fields)
        params = [*fields.values(), utcnow(), user_id]
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE app_user SET {assignments}, updated_at = %s WHERE id = %s RETURNING *",
                    params,
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        if not row:
            raise RecordNotFound("user not found", {"user_id": user_id})
        return self._user_from_row(row)

    def get_role_profile(self, user_id: str) -> Optional[RoleProfile]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM role_profile WHERE user_id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return RoleProfile(user_id=str(row["user_id"]), role=row["role"], created_at=row["created_at"])

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                VALUES (%s, %s, %s, now())
                ON CONFLICT (user_id) DO UPDATE SET password_hash = EXCLUDED.password_hash,
                    password_algo = EXCLUDED.password_algo, last_updated_at = now()
                """,
                (user_id, password_hash, password_algo),
            )

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return row["password_hash"], row["password_algo"]

    def link_user_auth_provider(
        self, user_id: str, provider: str, provider_uid: str
    ) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO user_auth_provider (user_id, provider, provider_uid)
                VALUES (%s, %s, %s) ON CONFLICT DO NOTHING
                """,
                (user_id, provider, provider_uid),
            )
            return cur.rowcount > 0

    def list_user_auth_providers(self, user_id: str) -> List[AuthProviderLink]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM user_auth_provider WHERE user_id = %s", (user_id,)
            ).fetchall()
        return [
            AuthProviderLink(
                user_id=str(row["user_id"]),
                provider=row["provider"],
                provider_user_id=row["provider_uid"],
                created_at=row["created_at"],
            )
            for row in rows
        ]

    # --------------------------------------------------------------- sessions

    def _insert_session(self, conn, session: Session) -> None:
        conn.execute(
            """
            INSERT INTO auth_session (id, user_id, token, device_type, operating_system, browser,
                                      ip_address, user_agent, is_active, created_at, last_activity, expires_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                session.id,
                session.user_id,
                session.token,
                session.device_type,
                session.operating_system,
                session.browser,
                session.ip_address,
                session.user_agent,
                session.is_active,
                session.created_at,
                session.last_activity,
                session.expires_at,
            ),
        )

    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                self._insert_session(conn, session)
        except errors.UniqueViolation:
            raise ConstraintViolation("session token exists", {"field": "token"})
        return session

    def record_login(
        self, user_id: str, session: Session, *, mark_verified: bool = False
    ) -> User:
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    """
                    UPDATE app_user SET last_login = %s, updated_at = now(),
                        is_verified = is_verified OR %s
                    WHERE id = %s RETURNING *
                    """,
                    (session.created_at, mark_verified, user_id),
                ).fetchone()
                if not row:
                    raise RecordNotFound("user not found", {"user_id": user_id})
                self._insert_session(conn, session)
        return self._user_from_row(row)

    def get_session_by_token(self, token: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE token = %s", (token,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def list_user_sessions(
        self, user_id: str, *, active_only: bool = True
    ) -> List[Session]:
        query = "SELECT * FROM auth_session WHERE user_id = %s"
        if active_only:
            query += " AND is_active"
        query += " ORDER BY created_at DESC"
        with self._connect() as conn:
            rows = conn.execute(query, (user_id,)).fetchall()
        return [self._session_from_row(row) for row in rows]

    def list_recent_sessions(
        self, user_id: str, since: datetime, limit: int = 5
    ) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM auth_session WHERE user_id = %s AND created_at >= %s
                ORDER BY created_at DESC LIMIT %s
                """,
                (user_id, since, limit),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def touch_session(self, token: str, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE auth_session SET last_activity = %s WHERE token = %s", (at, token)
            )

    def deactivate_session(self, token: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE auth_session SET is_active = FALSE WHERE token = %s AND is_active",
                (token,),
            )
            return cur.rowcount > 0

    def deactivate_user_sessions(
        self, user_id: str, *, except_token: Optional[str] = None
    ) -> int:
        with self._connect() as conn:
            if except_token:
                cur = conn.execute(
                    """
                    UPDATE auth_session SET is_active = FALSE
                    WHERE user_id = %s AND is_active AND token <> %s
                    """,
                    (user_id, except_token),
                )
            else:
                cur = conn.execute(
                    "UPDATE auth_session SET is_active = FALSE WHERE user_id = %s AND is_active",
                    (user_id,),
                )
            return cur.rowcount

    def delete_session(self, token: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth_session WHERE token = %s", (token,))
            return cur.rowcount > 0

    # --------------------------------------------------- account lifecycle rows

    def create_reactivation_request(
        self,
        user_id: str,
        reason: str,
        *,
        additional_info: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> ReactivationRequest:
        request = ReactivationRequest(
            id=str(uuid.uuid4()),
            user_id=user_id,
            reason=reason,
            additional_info=additional_info,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO reactivation_request (id, user_id, reason, additional_info, status,
                                                  ip_address, user_agent, submitted_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    request.id,
                    user_id,
                    reason,
                    additional_info,
                    request.status,
                    ip_address,
                    user_agent,
                    request.submitted_at,
                ),
            )
        return request

    def get_latest_reactivation_request(
        self, user_id: str, *, status: Optional[str] = None
    ) -> Optional[ReactivationRequest]:
        query = "SELECT * FROM reactivation_request WHERE user_id = %s"
        params: list[Any] = [user_id]
        if status:
            query += " AND status = %s"
            params.append(status)
        query += " ORDER BY submitted_at DESC LIMIT 1"
        with self._connect() as conn:
            row = conn.execute(query, params).fetchone()
        return self._reactivation_from_row(row) if row else None

    def create_account_deletion(self, record: AccountDeletion) -> AccountDeletion:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO account_deletion (id, user_id, original_email, reason, ip_address,
                                              deleted_at, recovery_expires_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    record.id,
                    record.user_id,
                    record.original_email,
                    record.reason,
                    record.ip_address,
                    record.deleted_at,
                    record.recovery_expires_at,
                ),
            )
        return record

    def get_account_deletion(self, user_id: str) -> Optional[AccountDeletion]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account_deletion WHERE user_id = %s ORDER BY deleted_at DESC LIMIT 1",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return AccountDeletion(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            original_email=row["original_email"],
            reason=row["reason"],
            deleted_at=row["deleted_at"],
            recovery_expires_at=row["recovery_expires_at"],
            ip_address=row.get("ip_address"),
        )

    def create_notification(self, notification: Notification) -> Notification:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO notification (id, user_id, type, title, message, priority, data, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    notification.id,
                    notification.user_id,
                    notification.type,
                    notification.title,
                    notification.message,
                    notification.priority,
                    json.dumps(notification.data) if notification.data else None,
                    notification.created_at,
                ),
            )
        return notification

    def list_notifications(self, user_id: str) -> List[Notification]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM notification WHERE user_id = %s ORDER BY created_at", (user_id,)
            ).fetchall()
        return [
            Notification(
                id=str(row["id"]),
                user_id=str(row["user_id"]),
                type=row["type"],
                title=row["title"],
                message=row["message"],
                priority=row["priority"],
                data=row.get("data"),
                is_read=row["is_read"],
                created_at=row["created_at"],
            )
            for row in rows
        ]
