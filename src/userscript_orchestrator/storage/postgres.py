"""PostgreSQL-backed key-value storage with automatic table migration."""

from __future__ import annotations

import json
import logging
import threading
from typing import Any

from pydantic import ValidationError

from userscript_orchestrator.storage.base import StorageQuotaExceededError
from userscript_orchestrator.storage.models import Conversation, Userscript

logger = logging.getLogger(__name__)

# SQLSTATE class 53 is "insufficient resources" (disk full, out of memory, ...).
_QUOTA_SQLSTATE_CLASS = "53"


class PostgresScriptStorage:
    """Persist userscripts and conversations as JSONB documents keyed by id."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("USERSCRIPT_ORCHESTRATOR_DATABASE_URL is required")
        self.database_url = database_url
        self._lock = threading.Lock()
        self._psycopg, self._dict_row, self._json_wrapper = self._load_psycopg()

    def migrate(self) -> None:
        with self._lock, self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS userscripts (
                    id TEXT PRIMARY KEY,
                    conversation_id TEXT,
                    payload JSONB NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS conversations (
                    id TEXT PRIMARY KEY,
                    domain TEXT,
                    payload JSONB NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_conversations_domain
                ON conversations(domain)
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_userscripts_updated_at
                ON userscripts(updated_at DESC)
                """)
            conn.commit()

    def save_userscript(self, userscript: Userscript) -> Userscript:
        self._write(
            """
            INSERT INTO userscripts (id, conversation_id, payload, updated_at)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (id) DO UPDATE
            SET conversation_id = EXCLUDED.conversation_id,
                payload = EXCLUDED.payload,
                updated_at = EXCLUDED.updated_at
            """,
            (
                userscript.id,
                userscript.conversation_id,
                self._json_wrapper(userscript.model_dump(mode="json")),
                userscript.updated_at,
            ),
        )
        return userscript

    def get_userscript(self, userscript_id: str) -> Userscript | None:
        row = self._fetch_one("SELECT payload FROM userscripts WHERE id = %s", (userscript_id,))
        if row is None:
            return None
        return self._parse(row["payload"], Userscript, userscript_id)

    def list_userscripts(self) -> list[Userscript]:
        rows = self._fetch_all("SELECT id, payload FROM userscripts ORDER BY updated_at DESC")
        return [
            record
            for record in (self._parse(row["payload"], Userscript, row["id"]) for row in rows)
            if record is not None
        ]

    def delete_userscript(self, userscript_id: str) -> None:
        self._write("DELETE FROM userscripts WHERE id = %s", (userscript_id,))

    def save_conversation(self, conversation: Conversation) -> Conversation:
        self._write(
            """
            INSERT INTO conversations (id, domain, payload, updated_at)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (id) DO UPDATE
            SET domain = EXCLUDED.domain,
                payload = EXCLUDED.payload,
                updated_at = EXCLUDED.updated_at
            """,
            (
                conversation.id,
                conversation.domain,
                self._json_wrapper(conversation.model_dump(mode="json")),
                conversation.updated_at,
            ),
        )
        return conversation

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        row = self._fetch_one(
            "SELECT payload FROM conversations WHERE id = %s", (conversation_id,)
        )
        if row is None:
            return None
        return self._parse(row["payload"], Conversation, conversation_id)

    def list_conversations(self) -> list[Conversation]:
        rows = self._fetch_all("SELECT id, payload FROM conversations ORDER BY updated_at DESC")
        return [
            record
            for record in (self._parse(row["payload"], Conversation, row["id"]) for row in rows)
            if record is not None
        ]

    def delete_conversation(self, conversation_id: str) -> None:
        self._write("DELETE FROM conversations WHERE id = %s", (conversation_id,))

    def _write(self, sql: str, params: tuple[Any, ...]) -> None:
        try:
            with self._lock, self._connect() as conn:
                conn.execute(sql, params)
                conn.commit()
        except self._psycopg.Error as exc:
            sqlstate = getattr(exc, "sqlstate", None) or ""
            if sqlstate.startswith(_QUOTA_SQLSTATE_CLASS):
                raise StorageQuotaExceededError(str(exc)) from exc
            raise

    def _fetch_one(self, sql: str, params: tuple[Any, ...]) -> Any:
        with self._lock, self._connect() as conn:
            return conn.execute(sql, params).fetchone()

    def _fetch_all(self, sql: str) -> list[Any]:
        with self._lock, self._connect() as conn:
            return list(conn.execute(sql).fetchall())

    def _connect(self) -> Any:
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any]:
        try:
            import psycopg
            from psycopg.rows import dict_row
            from psycopg.types.json import Json
        except ImportError as exc:  # pragma: no cover
            raise RuntimeError(
                "PostgreSQL storage requires psycopg. "
                'Install with: python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row, Json

    @staticmethod
    def _parse(raw: Any, model: type[Any], record_id: str) -> Any:
        parsed = json.loads(raw) if isinstance(raw, str) else raw
        if not isinstance(parsed, dict):
            logger.warning("storage event=invalid_record model=%s id=%s", model.__name__, record_id)
            return None
        try:
            return model.model_validate(parsed)
        except ValidationError:
            logger.warning("storage event=invalid_record model=%s id=%s", model.__name__, record_id)
            return None
