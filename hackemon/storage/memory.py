from __future__ import annotations

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

from hackemon.logging import get_logger
from hackemon.storage.common import generate_uuid, parse_identity_key
from hackemon.storage.errors import ConstraintViolation
from hackemon.storage.models import Identity, UserAuthCredential, utcnow


class MemoryStore:
    """In-process credential store for tests and single-node development.

    When ``fs_root`` is given the whole state is snapshotted to
    ``<fs_root>/state/memory_store.json`` after every write and reloaded on
    start.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, Identity] = {}
        self.credentials: Dict[str, UserAuthCredential] = {}
        # user_id -> token digest -> expiry
        self.refresh_tokens: Dict[str, Dict[str, datetime]] = {}
        self._legacy_seq = 1
        # RLock so helpers can be called while a public method holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            if self._load_state():
                self.logger.info("memory_store_loaded", users=len(self.users))

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    # identities
    def create_identity(
        self,
        username: str,
        email: str,
        password_hash: str,
        password_algo: str,
        *,
        role: str = "user",
        level: int = 1,
    ) -> Identity:
        with self._data_lock:
            for existing in self.users.values():
                if existing.email == email:
                    raise ConstraintViolation("email already exists", {"field": "email"})
                if existing.username == username:
                    raise ConstraintViolation("username already exists", {"field": "username"})
            identity = Identity(
                id=generate_uuid(),
                email=email,
                username=username,
                role=role,
                level=level,
                legacy_id=self._legacy_seq,
            )
            self._legacy_seq += 1
            self.users[identity.id] = identity
            self.credentials[identity.id] = UserAuthCredential(
                user_id=identity.id,
                password_hash=password_hash,
                password_algo=password_algo,
            )
            self._persist_state()
            return identity

    def find_by_email_or_username(self, identifier: str) -> Optional[Identity]:
        with self._data_lock:
            return next(
                (
                    u
                    for u in self.users.values()
                    if u.email == identifier or u.username == identifier
                ),
                None,
            )

    def find_by_id(self, identity_id) -> Optional[Identity]:
        key = parse_identity_key(identity_id)
        if key is None:
            return None
        with self._data_lock:
            if key.is_legacy:
                return next(
                    (u for u in self.users.values() if u.legacy_id == key.value), None
                )
            return self.users.get(key.value)

    def update_role(self, identity_id: str, role: str) -> Optional[Identity]:
        with self._data_lock:
            identity = self.find_by_id(identity_id)
            if identity is None:
                return None
            identity.role = role
            identity.updated_at = utcnow()
            self._persist_state()
            return identity

    def get_password_record(self, identity_id: str) -> Optional[tuple[str, str]]:
        with self._data_lock:
            cred = self.credentials.get(identity_id)
            if cred is None:
                return None
            return cred.password_hash, cred.password_algo

    # refresh tokens
    def add_refresh_token(self, user_id: str, digest: str, expires_at: datetime) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found for refresh token", {"user_id": user_id})
            self.refresh_tokens.setdefault(user_id, {})[digest] = expires_at
            self._persist_state()

    def remove_refresh_token(self, user_id: str, digest: str) -> bool:
        with self._data_lock:
            removed = self.refresh_tokens.get(user_id, {}).pop(digest, None) is not None
            if removed:
                self._persist_state()
            return removed

    def has_refresh_token(self, user_id: str, digest: str) -> bool:
        with self._data_lock:
            return digest in self.refresh_tokens.get(user_id, {})

    def rotate_refresh_token(
        self, user_id: str, old_digest: str, new_digest: str, expires_at: datetime
    ) -> bool:
        with self._data_lock:
            tokens = self.refresh_tokens.get(user_id, {})
            if old_digest not in tokens:
                return False
            del tokens[old_digest]
            tokens[new_digest] = expires_at
            self._persist_state()
            return True

    def clear_refresh_tokens(self, user_id: str) -> int:
        with self._data_lock:
            cleared = len(self.refresh_tokens.pop(user_id, {}))
            if cleared:
                self._persist_state()
            return cleared

    def prune_refresh_tokens(self, now: datetime) -> int:
        with self._data_lock:
            pruned = 0
            for tokens in self.refresh_tokens.values():
                expired = [digest for digest, exp in tokens.items() if exp <= now]
                for digest in expired:
                    del tokens[digest]
                pruned += len(expired)
            if pruned:
                self._persist_state()
            return pruned

    def close(self) -> None:
        return None

    # persistence
    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "legacy_seq": self._legacy_seq,
            "users": [self._serialize_user(u) for u in self.users.values()],
            "credentials": [
                {
                    "user_id": cred.user_id,
                    "password_hash": cred.password_hash,
                    "password_algo": cred.password_algo,
                    "created_at": cred.created_at.isoformat(),
                }
                for cred in self.credentials.values()
            ],
            "refresh_tokens": [
                {"user_id": user_id, "token_digest": digest, "expires_at": exp.isoformat()}
                for user_id, tokens in self.refresh_tokens.items()
                for digest, exp in tokens.items()
            ],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".json.tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.credentials = {
            entry["user_id"]: UserAuthCredential(
                user_id=entry["user_id"],
                password_hash=entry["password_hash"],
                password_algo=entry.get("password_algo", ""),
                created_at=datetime.fromisoformat(entry["created_at"])
                if entry.get("created_at")
                else utcnow(),
            )
            for entry in data.get("credentials", [])
        }
        self.refresh_tokens = {}
        for entry in data.get("refresh_tokens", []):
            self.refresh_tokens.setdefault(entry["user_id"], {})[
                entry["token_digest"]
            ] = datetime.fromisoformat(entry["expires_at"])
        max_legacy = max((u.legacy_id or 0 for u in self.users.values()), default=0)
        self._legacy_seq = max(int(data.get("legacy_seq", 1)), max_legacy + 1)
        return True

    @staticmethod
    def _serialize_user(user: Identity) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "username": user.username,
            "role": user.role,
            "level": user.level,
            "legacy_id": user.legacy_id,
            "created_at": user.created_at.isoformat() if user.created_at else None,
            "updated_at": user.updated_at.isoformat() if user.updated_at else None,
        }

    @staticmethod
    def _deserialize_user(data: dict) -> Identity:
        return Identity(
            id=str(data["id"]),
            email=data["email"],
            username=data["username"],
            role=data.get("role", "user"),
            level=int(data.get("level", 1)),
            legacy_id=data.get("legacy_id"),
            created_at=datetime.fromisoformat(data["created_at"])
            if data.get("created_at")
            else None,
            updated_at=datetime.fromisoformat(data["updated_at"])
            if data.get("updated_at")
            else None,
        )
