"""Storage hooks used by the weekly retention cleanup."""
from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from threading import RLock
from typing import Dict, Iterator, List, Optional, Protocol

import psycopg2
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from ..errors import PersistenceFailure
from ..packages.repository import managed_connection


class RetentionStore(Protocol):
    def delete_inactive_packages_before(self, cutoff: datetime) -> int:
        ...

    def prune_questionnaire_history(self, keep_per_user: int) -> int:
        ...

    def delete_sessions_before(self, cutoff: datetime) -> int:
        ...


@dataclass(frozen=True)
class HistoryEntry:
    id: str
    user_id: str
    created_at: datetime


@dataclass(frozen=True)
class SessionRecord:
    id: str
    created_at: datetime


class InMemoryRetentionStore:
    """Retention hooks over an in-memory package repository plus local history and sessions."""

    def __init__(self, packages) -> None:
        self._packages = packages
        self._history: Dict[str, List[HistoryEntry]] = {}
        self._sessions: Dict[str, SessionRecord] = {}
        self._lock = RLock()

    def add_history(self, entry: HistoryEntry) -> None:
        with self._lock:
            self._history.setdefault(entry.user_id, []).append(entry)

    def add_session(self, session: SessionRecord) -> None:
        with self._lock:
            self._sessions[session.id] = session

    def history_for(self, user_id: str) -> List[HistoryEntry]:
        with self._lock:
            return sorted(self._history.get(user_id, []), key=lambda item: item.created_at, reverse=True)

    def session_ids(self) -> List[str]:
        with self._lock:
            return sorted(self._sessions)

    def delete_inactive_packages_before(self, cutoff: datetime) -> int:
        return self._packages.delete_inactive_before(cutoff)

    def prune_questionnaire_history(self, keep_per_user: int) -> int:
        removed = 0
        with self._lock:
            for user_id, entries in self._history.items():
                ordered = sorted(entries, key=lambda item: item.created_at, reverse=True)
                removed += max(len(ordered) - keep_per_user, 0)
                self._history[user_id] = ordered[:keep_per_user]
        return removed

    def delete_sessions_before(self, cutoff: datetime) -> int:
        with self._lock:
            stale = [key for key, session in self._sessions.items() if session.created_at < cutoff]
            for key in stale:
                self._sessions.pop(key, None)
        return len(stale)


class PostgresRetentionStore:
    """Retention hooks for the questionnaire history and session tables."""

    def __init__(self, packages, *, conn: Optional[PgConnection] = None) -> None:
        self._packages = packages
        self._conn = conn

    @contextmanager
    def _cursor(self) -> Iterator[PgCursor]:
        try:
            with managed_connection(self._conn) as (connection, _managed):
                cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
                try:
                    yield cursor
                finally:
                    cursor.close()
        except psycopg2.Error as exc:
            raise PersistenceFailure(
                "Retention cleanup failed",
                detail={"reason": type(exc).__name__},
            ) from exc

    def delete_inactive_packages_before(self, cutoff: datetime) -> int:
        return self._packages.delete_inactive_before(cutoff)

    def prune_questionnaire_history(self, keep_per_user: int) -> int:
        with self._cursor() as cursor:
            cursor.execute(
                """
                DELETE FROM questionnaire_history
                WHERE id IN (
                    SELECT id FROM (
                        SELECT id,
                               ROW_NUMBER() OVER (PARTITION BY user_id ORDER BY created_at DESC) AS position
                        FROM questionnaire_history
                    ) ranked
                    WHERE ranked.position > %s
                )
                """,
                (keep_per_user,),
            )
            return cursor.rowcount

    def delete_sessions_before(self, cutoff: datetime) -> int:
        with self._cursor() as cursor:
            cursor.execute("DELETE FROM sessions WHERE created_at < %s", (cutoff,))
            return cursor.rowcount


__all__ = [
    "HistoryEntry",
    "InMemoryRetentionStore",
    "PostgresRetentionStore",
    "RetentionStore",
    "SessionRecord",
]
