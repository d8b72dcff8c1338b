"""SQLite-backed document store for the allowlist, profiles, updates and rate limits."""
from __future__ import annotations

import json
import secrets
import sqlite3
from contextlib import closing, contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Tuple, TypeVar

from .models import (
    AdminRecord,
    DEFAULT_SUBSCRIBED,
    DomainRecord,
    RateLimitRecord,
    UpdateDoc,
    UserProfile,
)

T = TypeVar("T")

DomainMutator = Callable[[Optional[DomainRecord]], Optional[DomainRecord]]
RateLimitMutator = Callable[[Optional[RateLimitRecord]], Tuple[Optional[RateLimitRecord], T]]


def _ensure_directory(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def resolve_database_path(env_value: Optional[str]) -> Path:
    """Resolve the on-disk path for the portal database."""

    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    base_dir = Path(__file__).resolve().parent.parent / "data"
    return (base_dir / "portal.sqlite3").resolve(strict=False)


def _current_timestamp() -> datetime:
    return datetime.now(timezone.utc)


def _serialize_datetime(value: datetime) -> str:
    return value.isoformat()


def _parse_datetime(value: str) -> datetime:
    return datetime.fromisoformat(value)


def _parse_optional_datetime(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return _parse_datetime(str(value))


def _optional_bool(value: object) -> Optional[bool]:
    if value is None:
        return None
    return bool(value)


def _encode_flag(value: Optional[bool]) -> Optional[int]:
    if value is None:
        return None
    return int(bool(value))


class Database:
    """Wrapper around SQLite exposing point lookups and atomic per-key updates.

    Every call opens its own connection so the store can be used from worker
    threads. Mutations that read before writing run inside ``BEGIN IMMEDIATE``
    so concurrent writers to the same key are serialised.
    """

    def __init__(self, path: Path, *, timeout: float = 30.0) -> None:
        _ensure_directory(path)
        self._path = path
        self._timeout = timeout

    @property
    def path(self) -> Path:
        return self._path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            self._path,
            timeout=self._timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with closing(self._connect()) as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def initialize(self) -> None:
        """Create the required tables if they do not already exist."""

        with closing(self._connect()) as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS approved_domains (
                    domain TEXT PRIMARY KEY,
                    emails TEXT NOT NULL DEFAULT '[]',
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS users (
                    uid TEXT PRIMARY KEY,
                    email TEXT NOT NULL,
                    approved INTEGER NOT NULL DEFAULT 0,
                    subscribed INTEGER,
                    created_at TEXT NOT NULL,
                    last_login TEXT
                );

                CREATE TABLE IF NOT EXISTS admins (
                    email TEXT PRIMARY KEY,
                    created_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS timeline_updates (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    content_md TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    email_sent INTEGER NOT NULL DEFAULT 0,
                    sent_count INTEGER,
                    failed_count INTEGER
                );

                CREATE TABLE IF NOT EXISTS rate_limits (
                    principal_id TEXT PRIMARY KEY,
                    count INTEGER NOT NULL,
                    window_start INTEGER NOT NULL,
                    last_request INTEGER NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_users_email ON users(email);
                CREATE INDEX IF NOT EXISTS idx_updates_created_at ON timeline_updates(created_at);
                """
            )

    # ------------------------------------------------------------------
    # Allowlist domains
    # ------------------------------------------------------------------
    def get_domain(self, domain: str) -> Optional[DomainRecord]:
        with closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT * FROM approved_domains WHERE domain = ?",
                (domain,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_domain(row)

    def list_domains(self) -> List[DomainRecord]:
        with closing(self._connect()) as conn:
            rows = conn.execute("SELECT * FROM approved_domains ORDER BY domain").fetchall()
        return [self._row_to_domain(row) for row in rows]

    def mutate_domain(self, domain: str, mutator: DomainMutator) -> Optional[DomainRecord]:
        """Atomically apply ``mutator`` to the record stored under ``domain``.

        The mutator receives the current record (or ``None``) and returns the
        record to store, ``None`` to delete it, or the same object to leave it
        untouched. Exceptions raised by the mutator roll the transaction back.
        """

        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM approved_domains WHERE domain = ?",
                (domain,),
            ).fetchone()
            current = self._row_to_domain(row) if row is not None else None
            updated = mutator(current)

            if updated is current:
                return current
            if updated is None:
                conn.execute("DELETE FROM approved_domains WHERE domain = ?", (domain,))
                return None
            if updated.domain != domain:
                raise ValueError("Domain mutators must not change the record key")

            conn.execute(
                """
                INSERT INTO approved_domains (domain, emails, created_at)
                VALUES (?, ?, ?)
                ON CONFLICT(domain) DO UPDATE SET emails = excluded.emails
                """,
                (
                    domain,
                    json.dumps(list(updated.emails)),
                    _serialize_datetime(_current_timestamp()),
                ),
            )
            return updated

    # ------------------------------------------------------------------
    # User profiles
    # ------------------------------------------------------------------
    def get_user(self, uid: str) -> Optional[UserProfile]:
        with closing(self._connect()) as conn:
            row = conn.execute("SELECT * FROM users WHERE uid = ?", (uid,)).fetchone()
        if row is None:
            return None
        return self._row_to_user(row)

    def get_user_by_email(self, email: str) -> Optional[UserProfile]:
        with closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE email = ? ORDER BY created_at LIMIT 1",
                (email.strip().lower(),),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_user(row)

    def list_users(self) -> List[UserProfile]:
        with closing(self._connect()) as conn:
            rows = conn.execute("SELECT * FROM users ORDER BY created_at").fetchall()
        return [self._row_to_user(row) for row in rows]

    def record_login(self, uid: str, email: str, *, approved: bool) -> UserProfile:
        """Upsert a profile after sign-in without touching its subscription flag."""

        now = _serialize_datetime(_current_timestamp())
        normalized_email = email.strip().lower()
        with self._transaction() as conn:
            existing = conn.execute("SELECT uid FROM users WHERE uid = ?", (uid,)).fetchone()
            if existing is None:
                conn.execute(
                    """
                    INSERT INTO users (uid, email, approved, subscribed, created_at, last_login)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (uid, normalized_email, int(approved), int(DEFAULT_SUBSCRIBED), now, now),
                )
            else:
                conn.execute(
                    "UPDATE users SET email = ?, approved = ?, last_login = ? WHERE uid = ?",
                    (normalized_email, int(approved), now, uid),
                )
            row = conn.execute("SELECT * FROM users WHERE uid = ?", (uid,)).fetchone()
        return self._row_to_user(row)

    def update_user_flags(
        self,
        email: str,
        *,
        approved: Optional[bool] = None,
        subscribed: Optional[bool] = None,
    ) -> int:
        """Set the given flags on every profile with ``email``; return rows touched."""

        updates: List[str] = []
        values: List[object] = []
        if approved is not None:
            updates.append("approved = ?")
            values.append(_encode_flag(approved))
        if subscribed is not None:
            updates.append("subscribed = ?")
            values.append(_encode_flag(subscribed))
        if not updates:
            return 0

        values.append(email.strip().lower())
        query = f"UPDATE users SET {', '.join(updates)} WHERE email = ?"
        with closing(self._connect()) as conn:
            cursor = conn.execute(query, values)
            return cursor.rowcount

    # ------------------------------------------------------------------
    # Administrators
    # ------------------------------------------------------------------
    def is_admin(self, email: str) -> bool:
        with closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT 1 FROM admins WHERE email = ?",
                (email.strip().lower(),),
            ).fetchone()
        return row is not None

    def add_admin(self, email: str) -> bool:
        """Create an admin record; return ``False`` if it already existed."""

        with closing(self._connect()) as conn:
            cursor = conn.execute(
                "INSERT OR IGNORE INTO admins (email, created_at) VALUES (?, ?)",
                (email.strip().lower(), _serialize_datetime(_current_timestamp())),
            )
            return cursor.rowcount > 0

    def list_admins(self) -> List[AdminRecord]:
        with closing(self._connect()) as conn:
            rows = conn.execute("SELECT * FROM admins ORDER BY email").fetchall()
        return [
            AdminRecord(email=str(row["email"]), created_at=_parse_datetime(str(row["created_at"])))
            for row in rows
        ]

    # ------------------------------------------------------------------
    # Timeline updates
    # ------------------------------------------------------------------
    def create_update(self, title: str, content_md: str) -> UpdateDoc:
        update = UpdateDoc(
            id=secrets.token_hex(10),
            title=title,
            content_md=content_md,
            created_at=_current_timestamp(),
        )
        with closing(self._connect()) as conn:
            conn.execute(
                """
                INSERT INTO timeline_updates (id, title, content_md, created_at, email_sent)
                VALUES (?, ?, ?, ?, 0)
                """,
                (update.id, update.title, update.content_md, _serialize_datetime(update.created_at)),
            )
        return update

    def get_update(self, update_id: str) -> Optional[UpdateDoc]:
        with closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT * FROM timeline_updates WHERE id = ?",
                (update_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_update(row)

    def list_updates(self, limit: int = 20) -> List[UpdateDoc]:
        with closing(self._connect()) as conn:
            rows = conn.execute(
                "SELECT * FROM timeline_updates ORDER BY created_at DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [self._row_to_update(row) for row in rows]

    def mark_update_sent(self, update_id: str) -> None:
        with closing(self._connect()) as conn:
            conn.execute(
                "UPDATE timeline_updates SET email_sent = 1 WHERE id = ?",
                (update_id,),
            )

    def record_update_delivery(self, update_id: str, *, sent: int, failed: int) -> None:
        with closing(self._connect()) as conn:
            conn.execute(
                """
                UPDATE timeline_updates
                   SET email_sent = ?, sent_count = ?, failed_count = ?
                 WHERE id = ?
                """,
                (int(failed == 0), sent, failed, update_id),
            )

    def delete_update(self, update_id: str) -> bool:
        with closing(self._connect()) as conn:
            cursor = conn.execute("DELETE FROM timeline_updates WHERE id = ?", (update_id,))
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Rate limits
    # ------------------------------------------------------------------
    def get_rate_limit(self, principal_id: str) -> Optional[RateLimitRecord]:
        with closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT * FROM rate_limits WHERE principal_id = ?",
                (principal_id,),
            ).fetchone()
        if row is None:
            return None
        return self._row_to_rate_limit(row)

    def mutate_rate_limit(self, principal_id: str, mutator: RateLimitMutator[T]) -> T:
        """Atomically read, evaluate and write the counter for ``principal_id``.

        The mutator returns ``(record_to_store, result)``; returning the
        current record unchanged skips the write.
        """

        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM rate_limits WHERE principal_id = ?",
                (principal_id,),
            ).fetchone()
            current = self._row_to_rate_limit(row) if row is not None else None
            updated, result = mutator(current)

            if updated is not None and updated is not current:
                conn.execute(
                    """
                    INSERT INTO rate_limits (principal_id, count, window_start, last_request)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(principal_id) DO UPDATE SET
                        count = excluded.count,
                        window_start = excluded.window_start,
                        last_request = excluded.last_request
                    """,
                    (principal_id, updated.count, updated.window_start, updated.last_request),
                )
            return result

    def purge_rate_limits(self, cutoff_ms: int, *, batch_size: int = 500) -> int:
        """Delete stale counters among a bounded page of records."""

        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT principal_id, last_request FROM rate_limits LIMIT ?",
                (batch_size,),
            ).fetchall()
            stale = [(row["principal_id"],) for row in rows if int(row["last_request"] or 0) < cutoff_ms]
            if stale:
                conn.executemany("DELETE FROM rate_limits WHERE principal_id = ?", stale)
        return len(stale)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _row_to_domain(self, row: sqlite3.Row) -> DomainRecord:
        raw = json.loads(row["emails"] or "[]")
        return DomainRecord(domain=str(row["domain"]), emails=tuple(str(item) for item in raw))

    def _row_to_user(self, row: sqlite3.Row) -> UserProfile:
        return UserProfile(
            uid=str(row["uid"]),
            email=str(row["email"]),
            approved=bool(row["approved"]),
            subscribed=_optional_bool(row["subscribed"]),
            created_at=_parse_datetime(str(row["created_at"])),
            last_login=_parse_optional_datetime(row["last_login"]),
        )

    def _row_to_update(self, row: sqlite3.Row) -> UpdateDoc:
        return UpdateDoc(
            id=str(row["id"]),
            title=str(row["title"]),
            content_md=str(row["content_md"]),
            created_at=_parse_datetime(str(row["created_at"])),
            email_sent=bool(row["email_sent"]),
            sent_count=row["sent_count"],
            failed_count=row["failed_count"],
        )

    def _row_to_rate_limit(self, row: sqlite3.Row) -> RateLimitRecord:
        return RateLimitRecord(
            principal_id=str(row["principal_id"]),
            count=int(row["count"]),
            window_start=int(row["window_start"]),
            last_request=int(row["last_request"]),
        )


__all__ = ["Database", "resolve_database_path"]
