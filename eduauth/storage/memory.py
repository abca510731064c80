from __future__ import annotations

import dataclasses
import json
import os
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Type, TypeVar

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

T = TypeVar("T")

_USER_MUTABLE_FIELDS = frozenset(
    {
        "email",
        "first_name",
        "last_name",
        "role",
        "is_verified",
        "is_active",
        "is_banned",
        "banned_at",
        "ban_reason",
        "last_login",
        "profile_image",
        "profile_image_id",
    }
)


class MemoryStore:
    """In-process credential store persisted as JSON under ``fs_root/state``."""

    def __init__(self, fs_root: str = "/tmp/eduauth") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, tuple[str, str]] = {}
        self.role_profiles: Dict[str, RoleProfile] = {}
        self.providers: List[AuthProviderLink] = []
        self.sessions: Dict[str, Session] = {}
        self.reactivation_requests: Dict[str, ReactivationRequest] = {}
        self.account_deletions: Dict[str, AccountDeletion] = {}
        self.notifications: Dict[str, Notification] = {}
        # RLock so helpers can nest inside a locked mutation
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    # ------------------------------------------------------------------ users

    def _email_taken(self, email: str) -> bool:
        return any(existing.email == email for existing in self.users.values())

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
        """Create the account, its credentials and its role profile together."""
        with self._data_lock:
            if self._email_taken(email):
                raise ConstraintViolation("email already exists", {"field": "email"})
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
            self.users[user.id] = user
            if password_hash:
                self.credentials[user.id] = (password_hash, password_algo or "")
            self.role_profiles[user.id] = RoleProfile(user_id=user.id, role=role)
            self._persist_state()
            return dataclasses.replace(user)

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
        with self._data_lock:
            if self._email_taken(email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=email,
                first_name=first_name,
                last_name=last_name,
                role=role,
                is_verified=True,
                profile_image=profile_image,
            )
            self.users[user.id] = user
            self.providers.append(
                AuthProviderLink(
                    user_id=user.id, provider=provider, provider_user_id=provider_user_id
                )
            )
            self.role_profiles[user.id] = RoleProfile(user_id=user.id, role=role)
            self._persist_state()
            return dataclasses.replace(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return dataclasses.replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == email), None)
            return dataclasses.replace(user) if user else None

    def list_user_ids_by_role(self, role: str) -> List[str]:
        with self._data_lock:
            return [
                u.id
                for u in self.users.values()
                if u.role == role and u.is_active and not u.is_banned
            ]

    def update_user(self, user_id: str, **fields: Any) -> User:
        unknown = set(fields) - _USER_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise RecordNotFound("user not found", {"user_id": user_id})
            if "email" in fields and fields["email"] != user.email:
                if self._email_taken(fields["email"]):
                    raise ConstraintViolation("email already exists", {"field": "email"})
            for key, value in fields.items():
                setattr(user, key, value)
            user.updated_at = utcnow()
            self._persist_state()
            return dataclasses.replace(user)

    def get_role_profile(self, user_id: str) -> Optional[RoleProfile]:
        with self._data_lock:
            return self.role_profiles.get(user_id)

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            self.credentials[user_id] = (password_hash, password_algo)
            self._persist_state()

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def link_user_auth_provider(
        self, user_id: str, provider: str, provider_uid: str
    ) -> bool:
        """Link an external identity; returns False when it was already linked."""
        with self._data_lock:
            for existing in self.providers:
                if existing.provider == provider and existing.provider_user_id == provider_uid:
                    return False
            self.providers.append(
                AuthProviderLink(
                    user_id=user_id, provider=provider, provider_user_id=provider_uid
                )
            )
            self._persist_state()
            return True

    def list_user_auth_providers(self, user_id: str) -> List[AuthProviderLink]:
        with self._data_lock:
            return [p for p in self.providers if p.user_id == user_id]

    # --------------------------------------------------------------- sessions

    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if any(s.token == session.token for s in self.sessions.values()):
                raise ConstraintViolation("session token exists", {"field": "token"})
            self.sessions[session.id] = dataclasses.replace(session)
            self._persist_state()
            return session

    def record_login(
        self, user_id: str, session: Session, *, mark_verified: bool = False
    ) -> User:
        """Update lastLogin (and optionally the verified flag) and insert the session."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise RecordNotFound("user not found", {"user_id": user_id})
            user.last_login = session.created_at
            if mark_verified:
                user.is_verified = True
            user.updated_at = utcnow()
            self.sessions[session.id] = dataclasses.replace(session)
            self._persist_state()
            return dataclasses.replace(user)

    def get_session_by_token(self, token: str) -> Optional[Session]:
        with self._data_lock:
            found = next((s for s in self.sessions.values() if s.token == token), None)
            return dataclasses.replace(found) if found else None

    def list_user_sessions(
        self, user_id: str, *, active_only: bool = True
    ) -> List[Session]:
        with self._data_lock:
            rows = [
                dataclasses.replace(s)
                for s in self.sessions.values()
                if s.user_id == user_id and (s.is_active or not active_only)
            ]
        return sorted(rows, key=lambda s: s.created_at, reverse=True)

    def list_recent_sessions(
        self, user_id: str, since: datetime, limit: int = 5
    ) -> List[Session]:
        rows = [
            s
            for s in self.list_user_sessions(user_id, active_only=False)
            if s.created_at >= since
        ]
        return rows[:limit]

    def touch_session(self, token: str, at: datetime) -> None:
        with self._data_lock:
            for session in self.sessions.values():
                if session.token == token:
                    session.last_activity = at
                    self._persist_state()
                    return

    def deactivate_session(self, token: str) -> bool:
        with self._data_lock:
            for session in self.sessions.values():
                if session.token == token and session.is_active:
                    session.is_active = False
                    self._persist_state()
                    return True
            return False

    def deactivate_user_sessions(
        self, user_id: str, *, except_token: Optional[str] = None
    ) -> int:
        with self._data_lock:
            count = 0
            for session in self.sessions.values():
                if session.user_id != user_id or not session.is_active:
                    continue
                if except_token and session.token == except_token:
                    continue
                session.is_active = False
                count += 1
            if count:
                self._persist_state()
            return count

    def delete_session(self, token: str) -> bool:
        with self._data_lock:
            for session_id, session in list(self.sessions.items()):
                if session.token == token:
                    del self.sessions[session_id]
                    self._persist_state()
                    return True
            return False

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
        with self._data_lock:
            request = ReactivationRequest(
                id=str(uuid.uuid4()),
                user_id=user_id,
                reason=reason,
                additional_info=additional_info,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            self.reactivation_requests[request.id] = request
            self._persist_state()
            return dataclasses.replace(request)

    def get_latest_reactivation_request(
        self, user_id: str, *, status: Optional[str] = None
    ) -> Optional[ReactivationRequest]:
        with self._data_lock:
            matches = [
                r
                for r in self.reactivation_requests.values()
                if r.user_id == user_id and (status is None or r.status == status)
            ]
            if not matches:
                return None
            latest = max(matches, key=lambda r: r.submitted_at)
            return dataclasses.replace(latest)

    def create_account_deletion(self, record: AccountDeletion) -> AccountDeletion:
        with self._data_lock:
            self.account_deletions[record.id] = record
            self._persist_state()
            return record

    def get_account_deletion(self, user_id: str) -> Optional[AccountDeletion]:
        with self._data_lock:
            return next(
                (d for d in self.account_deletions.values() if d.user_id == user_id),
                None,
            )

    def create_notification(self, notification: Notification) -> Notification:
        with self._data_lock:
            self.notifications[notification.id] = notification
            self._persist_state()
            return notification

    def list_notifications(self, user_id: str) -> List[Notification]:
        with self._data_lock:
            return sorted(
                (n for n in self.notifications.values() if n.user_id == user_id),
                key=lambda n: n.created_at,
            )

    # ------------------------------------------------------------ persistence

    def ping(self) -> None:
        if not os.access(self.fs_root, os.W_OK):
            raise OSError(f"state directory {self.fs_root} is not writable")

    @staticmethod
    def _serialize(obj: Any) -> dict:
        payload = {}
        for f in dataclasses.fields(obj):
            value = getattr(obj, f.name)
            payload[f.name] = value.isoformat() if isinstance(value, datetime) else value
        return payload

    @staticmethod
    def _deserialize(cls: Type[T], data: dict) -> T:
        kwargs = {}
        for f in dataclasses.fields(cls):
            if f.name not in data:
                continue
            value = data[f.name]
            if value is not None and "datetime" in str(f.type):
                value = datetime.fromisoformat(value)
            kwargs[f.name] = value
        return cls(**kwargs)

    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": user_id,
                    "password_hash": creds[0],
                    "password_algo": creds[1],
                }
                for user_id, creds in self.credentials.items()
            ],
            "role_profiles": [self._serialize(p) for p in self.role_profiles.values()],
            "providers": [self._serialize(p) for p in self.providers],
            "sessions": [self._serialize(s) for s in self.sessions.values()],
            "reactivation_requests": [
                self._serialize(r) for r in self.reactivation_requests.values()
            ],
            "account_deletions": [
                self._serialize(d) for d in self.account_deletions.values()
            ],
            "notifications": [self._serialize(n) for n in self.notifications.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize(User, u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: (entry["password_hash"], entry.get("password_algo", ""))
            for entry in data.get("credentials", [])
        }
        self.role_profiles = {
            p["user_id"]: self._deserialize(RoleProfile, p)
            for p in data.get("role_profiles", [])
        }
        self.providers = [
            self._deserialize(AuthProviderLink, p) for p in data.get("providers", [])
        ]
        self.sessions = {
            s["id"]: self._deserialize(Session, s) for s in data.get("sessions", [])
        }
        self.reactivation_requests = {
            r["id"]: self._deserialize(ReactivationRequest, r)
            for r in data.get("reactivation_requests", [])
        }
        self.account_deletions = {
            d["id"]: self._deserialize(AccountDeletion, d)
            for d in data.get("account_deletions", [])
        }
        self.notifications = {
            n["id"]: self._deserialize(Notification, n)
            for n in data.get("notifications", [])
        }
        self.logger.info("memory_store_loaded", users=len(self.users), path=str(path))
        return True
