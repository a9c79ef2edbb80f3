"""
Persistence for consultations and users

- InMemory*Repository (default, used by tests)
- Sqlite*Repository (single-file runtime backend)

Every consultation write bumps ``version``; callers that pass
``expected_version`` get ConcurrentModificationError when the stored record
moved on in the meantime.
"""

import asyncio
import sqlite3
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional, Tuple

from medhira.config import Settings, StoreBackend
from medhira.core.exceptions import (
    ConcurrentModificationError,
    ConsultationNotFound,
    DuplicateUserError,
)
from medhira.core.logging import get_logger
from medhira.models.consultation import Consultation, User, utcnow

logger = get_logger(__name__)


def _apply_changes(record: Consultation, changes: Dict[str, Any]) -> Consultation:
    payload = record.model_dump()
    payload.update(changes)
    payload["id"] = record.id
    payload["owner_id"] = record.owner_id
    payload["created_at"] = record.created_at
    payload["version"] = record.version + 1
    payload["updated_at"] = utcnow()
    return Consultation.model_validate(payload)


def _check_version(record: Consultation, expected_version: Optional[int]) -> None:
    if expected_version is not None and record.version != expected_version:
        raise ConcurrentModificationError(record.id, expected_version, record.version)


class ConsultationRepository:
    async def create(self, consultation: Consultation) -> Consultation:
        raise NotImplementedError

    async def get(self, consultation_id: str) -> Consultation:
        raise NotImplementedError

    async def list_for_owner(self, owner_id: str) -> List[Consultation]:
        raise NotImplementedError

    async def update(
        self,
        consultation_id: str,
        changes: Dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> Consultation:
        raise NotImplementedError

    async def delete(self, consultation_id: str) -> bool:
        raise NotImplementedError

    async def get_for_owner(self, consultation_id: str, owner_id: str) -> Consultation:
        """Reports records owned by someone else exactly like missing ones."""
        record = await self.get(consultation_id)
        if not record.is_owned_by(owner_id):
            raise ConsultationNotFound(consultation_id)
        return record

    async def delete_for_owner(self, consultation_id: str, owner_id: str) -> Consultation:
        record = await self.get_for_owner(consultation_id, owner_id)
        await self.delete(consultation_id)
        return record


class InMemoryConsultationRepository(ConsultationRepository):
    def __init__(self) -> None:
        self._store: Dict[str, Consultation] = {}
        self._lock = Lock()

    async def create(self, consultation: Consultation) -> Consultation:
        with self._lock:
            self._store[consultation.id] = consultation.model_copy(deep=True)
        return consultation

    async def get(self, consultation_id: str) -> Consultation:
        with self._lock:
            record = self._store.get(consultation_id)
        if record is None:
            raise ConsultationNotFound(consultation_id)
        return record.model_copy(deep=True)

    async def list_for_owner(self, owner_id: str) -> List[Consultation]:
        with self._lock:
            rows = [x.model_copy(deep=True) for x in self._store.values() if x.owner_id == owner_id]
        rows.sort(key=lambda x: x.created_at, reverse=True)
        return rows

    async def update(
        self,
        consultation_id: str,
        changes: Dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> Consultation:
        with self._lock:
            record = self._store.get(consultation_id)
            if record is None:
                raise ConsultationNotFound(consultation_id)
            _check_version(record, expected_version)
            updated = _apply_changes(record, changes)
            self._store[consultation_id] = updated
        return updated.model_copy(deep=True)

    async def delete(self, consultation_id: str) -> bool:
        with self._lock:
            return self._store.pop(consultation_id, None) is not None


class SqliteConsultationRepository(ConsultationRepository):
    def __init__(self, db_path: str) -> None:
        if not db_path:
            raise RuntimeError("SQLite repository requires a non-empty db_path.")
        self.db_path = str(Path(db_path).expanduser().resolve())
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS consultations (
                    id TEXT PRIMARY KEY,
                    owner_id TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    payload_json TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_consultations_owner_created
                ON consultations(owner_id, created_at DESC)
                """
            )
            conn.commit()

    def _fetch(self, conn: sqlite3.Connection, consultation_id: str) -> Consultation:
        row = conn.execute(
            "SELECT payload_json FROM consultations WHERE id = ?",
            (consultation_id,),
        ).fetchone()
        if row is None:
            raise ConsultationNotFound(consultation_id)
        return Consultation.model_validate_json(row["payload_json"])

    def _create(self, consultation: Consultation) -> Consultation:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO consultations(id, owner_id, created_at, version, payload_json)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    consultation.id,
                    consultation.owner_id,
                    consultation.created_at.isoformat(),
                    consultation.version,
                    consultation.model_dump_json(),
                ),
            )
            conn.commit()
        return consultation

    def _get(self, consultation_id: str) -> Consultation:
        with self._lock, self._connect() as conn:
            return self._fetch(conn, consultation_id)

    def _list_for_owner(self, owner_id: str) -> List[Consultation]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT payload_json FROM consultations
                WHERE owner_id = ?
                ORDER BY created_at DESC
                """,
                (owner_id,),
            ).fetchall()
        return [Consultation.model_validate_json(row["payload_json"]) for row in rows]

    def _update(
        self,
        consultation_id: str,
        changes: Dict[str, Any],
        expected_version: Optional[int],
    ) -> Consultation:
        with self._lock, self._connect() as conn:
            record = self._fetch(conn, consultation_id)
            _check_version(record, expected_version)
            updated = _apply_changes(record, changes)
            conn.execute(
                """
                UPDATE consultations SET version = ?, payload_json = ?
                WHERE id = ? AND version = ?
                """,
                (updated.version, updated.model_dump_json(), consultation_id, record.version),
            )
            conn.commit()
        return updated

    def _delete(self, consultation_id: str) -> bool:
        with self._lock, self._connect() as conn:
            cursor = conn.execute("DELETE FROM consultations WHERE id = ?", (consultation_id,))
            conn.commit()
            return bool(cursor.rowcount and cursor.rowcount > 0)

    async def create(self, consultation: Consultation) -> Consultation:
        return await asyncio.to_thread(self._create, consultation)

    async def get(self, consultation_id: str) -> Consultation:
        return await asyncio.to_thread(self._get, consultation_id)

    async def list_for_owner(self, owner_id: str) -> List[Consultation]:
        return await asyncio.to_thread(self._list_for_owner, owner_id)

    async def update(
        self,
        consultation_id: str,
        changes: Dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> Consultation:
        return await asyncio.to_thread(self._update, consultation_id, changes, expected_version)

    async def delete(self, consultation_id: str) -> bool:
        return await asyncio.to_thread(self._delete, consultation_id)


class UserRepository:
    async def create(self, user: User) -> User:
        raise NotImplementedError

    async def get_by_email(self, email: str) -> Optional[User]:
        raise NotImplementedError

    async def get_by_id(self, user_id: str) -> Optional[User]:
        raise NotImplementedError


class InMemoryUserRepository(UserRepository):
    def __init__(self) -> None:
        self._users: Dict[str, User] = {}
        self._lock = Lock()

    async def create(self, user: User) -> User:
        with self._lock:
            for existing in self._users.values():
                if existing.email.lower() == user.email.lower() or existing.username == user.username:
                    raise DuplicateUserError("User with this email or username already exists")
            self._users[user.id] = user
        return user

    async def get_by_email(self, email: str) -> Optional[User]:
        with self._lock:
            for user in self._users.values():
                if user.email.lower() == email.lower():
                    return user
        return None

    async def get_by_id(self, user_id: str) -> Optional[User]:
        with self._lock:
            return self._users.get(user_id)


class SqliteUserRepository(UserRepository):
    def __init__(self, db_path: str) -> None:
        self.db_path = str(Path(db_path).expanduser().resolve())
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    username TEXT NOT NULL UNIQUE,
                    email TEXT NOT NULL UNIQUE COLLATE NOCASE,
                    payload_json TEXT NOT NULL
                )
                """
            )
            conn.commit()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _create(self, user: User) -> User:
        try:
            with self._lock, self._connect() as conn:
                conn.execute(
                    "INSERT INTO users(id, username, email, payload_json) VALUES (?, ?, ?, ?)",
                    (user.id, user.username, user.email, user.model_dump_json()),
                )
                conn.commit()
        except sqlite3.IntegrityError as e:
            raise DuplicateUserError("User with this email or username already exists") from e
        return user

    def _select_one(self, sql: str, value: str) -> Optional[User]:
        with self._lock, self._connect() as conn:
            row = conn.execute(sql, (value,)).fetchone()
        if row is None:
            return None
        return User.model_validate_json(row["payload_json"])

    async def create(self, user: User) -> User:
        return await asyncio.to_thread(self._create, user)

    async def get_by_email(self, email: str) -> Optional[User]:
        return await asyncio.to_thread(
            self._select_one, "SELECT payload_json FROM users WHERE email = ?", email
        )

    async def get_by_id(self, user_id: str) -> Optional[User]:
        return await asyncio.to_thread(
            self._select_one, "SELECT payload_json FROM users WHERE id = ?", user_id
        )


def build_repositories(settings: Settings) -> Tuple[ConsultationRepository, UserRepository]:
    """Picks the storage backend named in the settings."""
    if settings.store_backend == StoreBackend.SQLITE:
        logger.info(f"Using SQLite store at {settings.sqlite_db_path}")
        return (
            SqliteConsultationRepository(settings.sqlite_db_path),
            SqliteUserRepository(settings.sqlite_db_path),
        )
    logger.info("Using in-memory store")
    return InMemoryConsultationRepository(), InMemoryUserRepository()
