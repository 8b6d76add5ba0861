from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Any

import psycopg
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

if TYPE_CHECKING:
    from config import Settings


class EntitlementStore:
    """Postgres-backed per-user pro flag plus the unresolved webhook outbox."""

    def __init__(
        self,
        database_url: str,
        connect_timeout: int = 5,
        statement_timeout_ms: int = 5000,
    ) -> None:
        self.database_url = database_url
        self.connect_timeout = connect_timeout
        self.statement_timeout_ms = statement_timeout_ms
        self._schema_ready = False
        self._schema_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: "Settings") -> "EntitlementStore":
        if not settings.database_url:
            raise RuntimeError("DATABASE_URL is not set.")
        return cls(
            settings.database_url,
            connect_timeout=settings.db_connect_timeout_seconds,
            statement_timeout_ms=settings.db_statement_timeout_ms,
        )

    def get_connection(self) -> psycopg.Connection:
        return psycopg.connect(
            self.database_url,
            row_factory=dict_row,
            connect_timeout=self.connect_timeout,
            options=f"-c statement_timeout={self.statement_timeout_ms}",
        )

    def ensure_schema(self) -> None:
        if self._schema_ready:
            return
        with self._schema_lock:
            if self._schema_ready:
                return
            with self.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute(
                        """
                        CREATE TABLE IF NOT EXISTS user_entitlements (
                            user_id TEXT PRIMARY KEY,
                            is_pro BOOLEAN NOT NULL DEFAULT FALSE,
                            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                        );
                        """
                    )
                    cur.execute(
                        """
                        CREATE TABLE IF NOT EXISTS unresolved_events (
                            event_id TEXT PRIMARY KEY,
                            event_type TEXT NOT NULL,
                            session_id TEXT,
                            user_id TEXT,
                            reason TEXT NOT NULL,
                            raw JSONB NOT NULL,
                            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                            resolved_at TIMESTAMPTZ
                        );
                        """
                    )
                    cur.execute(
                        """
                        CREATE INDEX IF NOT EXISTS unresolved_events_open_idx
                        ON unresolved_events (created_at)
                        WHERE resolved_at IS NULL;
                        """
                    )
            self._schema_ready = True

    def grant_pro(self, user_id: str) -> None:
        self.ensure_schema()
        with self.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO user_entitlements (user_id, is_pro, updated_at)
                    VALUES (%s, TRUE, now())
                    ON CONFLICT (user_id)
                    DO UPDATE SET is_pro = TRUE, updated_at = now()
                    """,
                    (user_id,),
                )

    def get_entitlement(self, user_id: str) -> dict[str, Any] | None:
        self.ensure_schema()
        with self.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT * FROM user_entitlements WHERE user_id = %s",
                    (user_id,),
                )
                row = cur.fetchone()
                return dict(row) if row else None

    def record_unresolved_event(
        self,
        *,
        event_id: str,
        event_type: str,
        session_id: str | None,
        user_id: str | None,
        reason: str,
        raw: dict[str, Any],
    ) -> bool:
        self.ensure_schema()
        with self.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO unresolved_events (
                        event_id, event_type, session_id, user_id, reason, raw
                    )
                    VALUES (%s, %s, %s, %s, %s, %s)
                    ON CONFLICT (event_id) DO NOTHING
                    RETURNING event_id
                    """,
                    (event_id, event_type, session_id, user_id, reason, Jsonb(raw)),
                )
                return cur.fetchone() is not None

    def list_unresolved_events(self, limit: int = 50) -> list[dict[str, Any]]:
        self.ensure_schema()
        with self.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT event_id, event_type, session_id, user_id, reason, created_at
                    FROM unresolved_events
                    WHERE resolved_at IS NULL
                    ORDER BY created_at ASC
                    LIMIT %s
                    """,
                    (limit,),
                )
                return [dict(row) for row in cur.fetchall()]

    def mark_event_resolved(self, event_id: str, user_id: str) -> None:
        self.ensure_schema()
        with self.get_connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE unresolved_events
                    SET resolved_at = now(), user_id = %s
                    WHERE event_id = %s
                    """,
                    (user_id, event_id),
                )
