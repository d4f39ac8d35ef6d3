"""SQLite persistence layer."""

from __future__ import annotations

import json
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from argenteia.models import GENERAL_EXPERT, ExpertProfile, Fact, ModelEntry, ScheduledTask, UserProfile

SCHEMA_VERSION = 1


class Database:
    """Small SQLite wrapper with explicit schema management."""

    def __init__(self, path: Path) -> None:
        self._path = path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self._path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create schema on first run."""

        if self._path.parent and not self._path.parent.exists():
            self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("CREATE TABLE IF NOT EXISTS schema_version (version INTEGER NOT NULL)")
            row = conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
            if row is None:
                self._create_schema(conn)
                conn.execute("INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,))
            elif row["version"] != SCHEMA_VERSION:
                raise RuntimeError(
                    f"Unsupported schema version {row['version']} (expected {SCHEMA_VERSION})"
                )

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS users (
                user_id TEXT PRIMARY KEY,
                name TEXT,
                timezone TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS chats (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                title TEXT NOT NULL,
                origin TEXT NOT NULL,
                expert_name TEXT,
                pinned INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS messages (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                chat_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                origin TEXT NOT NULL,
                expert_name TEXT,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS user_facts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                fact TEXT NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS scheduled_tasks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                conversation_id TEXT NOT NULL,
                task TEXT NOT NULL,
                cron TEXT NOT NULL,
                origin TEXT NOT NULL,
                route_id TEXT,
                active INTEGER NOT NULL DEFAULT 1,
                last_run_at TEXT,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS experts (
                name TEXT PRIMARY KEY,
                model TEXT NOT NULL,
                system_prompt TEXT NOT NULL,
                tools_json TEXT NOT NULL,
                experts_json TEXT NOT NULL,
                temperature REAL NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS models (
                name TEXT PRIMARY KEY,
                api_key TEXT,
                base_url TEXT,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS tool_executions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id TEXT NOT NULL,
                tool_name TEXT NOT NULL,
                input_json TEXT NOT NULL,
                output_text TEXT NOT NULL,
                succeeded INTEGER NOT NULL,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_messages_chat ON messages(chat_id);
            CREATE INDEX IF NOT EXISTS idx_facts_user ON user_facts(user_id);
            CREATE INDEX IF NOT EXISTS idx_tasks_user ON scheduled_tasks(user_id);
            """
        )

    # -- users ---------------------------------------------------------------

    def get_user(self, user_id: str) -> UserProfile | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM users WHERE user_id = ?", (user_id,)).fetchone()
        if row is None:
            return None
        return UserProfile(
            user_id=row["user_id"], name=row["name"], timezone=row["timezone"], created_at=row["created_at"]
        )

    def upsert_user(self, user_id: str, name: str | None, timezone_name: str) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO users(user_id, name, timezone, created_at)
                VALUES(?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    name=COALESCE(excluded.name, users.name),
                    timezone=excluded.timezone
                """,
                (user_id, name, timezone_name, _utc_now_iso()),
            )

    # -- chats ---------------------------------------------------------------

    def create_chat(
        self,
        user_id: str,
        title: str | None = None,
        origin: str = "web",
        expert_name: str | None = None,
        chat_id: str | None = None,
    ) -> dict[str, Any]:
        now = _utc_now_iso()
        chat = {
            "id": chat_id or str(uuid.uuid4()),
            "user_id": user_id,
            "title": title or "Nuevo chat",
            "origin": origin,
            "expert_name": expert_name,
            "pinned": 0,
            "created_at": now,
            "updated_at": now,
        }
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO chats(id, user_id, title, origin, expert_name, pinned, created_at, updated_at)
                VALUES (:id, :user_id, :title, :origin, :expert_name, :pinned, :created_at, :updated_at)
                """,
                chat,
            )
        return chat

    def get_chat(self, chat_id: str) -> dict[str, Any] | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM chats WHERE id = ?", (chat_id,)).fetchone()
        return dict(row) if row else None

    def get_or_create_channel_chat(self, user_id: str, origin: str, chat_id: str) -> dict[str, Any]:
        """Return the fixed chat of a bot channel conversation, creating it once."""

        existing = self.get_chat(chat_id)
        if existing is not None:
            return existing
        return self.create_chat(user_id, title=f"{origin.capitalize()}", origin=origin, chat_id=chat_id)

    def list_chats(self, user_id: str) -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT c.*,
                    (SELECT content FROM messages WHERE chat_id = c.id ORDER BY id DESC LIMIT 1) AS last_message
                FROM chats c
                WHERE c.user_id = ?
                ORDER BY c.pinned DESC, c.updated_at DESC
                """,
                (user_id,),
            ).fetchall()
        return [dict(row) for row in rows]

    def rename_chat(self, chat_id: str, title: str) -> None:
        with self._connect() as conn:
            conn.execute("UPDATE chats SET title = ? WHERE id = ?", (title, chat_id))

    def toggle_pin(self, chat_id: str) -> bool:
        with self._connect() as conn:
            row = conn.execute("SELECT pinned FROM chats WHERE id = ?", (chat_id,)).fetchone()
            if row is None:
                return False
            pinned = 0 if row["pinned"] else 1
            conn.execute("UPDATE chats SET pinned = ? WHERE id = ?", (pinned, chat_id))
        return bool(pinned)

    def touch_chat(self, chat_id: str) -> None:
        with self._connect() as conn:
            conn.execute("UPDATE chats SET updated_at = ? WHERE id = ?", (_utc_now_iso(), chat_id))

    def delete_chat(self, chat_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM messages WHERE chat_id = ?", (chat_id,))
            conn.execute("DELETE FROM chats WHERE id = ?", (chat_id,))

    # -- durable message log ---------------------------------------------------

    def persist(
        self,
        chat_id: str,
        user_id: str,
        role: str,
        content: str,
        origin: str,
        expert_name: str | None = None,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO messages(chat_id, user_id, role, content, origin, expert_name, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (chat_id, user_id, role, content, origin, expert_name, _utc_now_iso()),
            )

    def get_messages(self, chat_id: str, limit: int = 50) -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT role, content, origin, created_at
                FROM messages
                WHERE chat_id = ?
                ORDER BY id DESC
                LIMIT ?
                """,
                (chat_id, limit),
            ).fetchall()
        return [dict(row) for row in reversed(rows)]

    # -- long-term facts -------------------------------------------------------

    def save_fact(self, user_id: str, fact: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "INSERT INTO user_facts(user_id, fact, created_at) VALUES (?, ?, ?)",
                (user_id, fact, _utc_now_iso()),
            )
            return int(cur.lastrowid)

    def get_facts(self, user_id: str) -> list[Fact]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id, user_id, fact, created_at FROM user_facts WHERE user_id = ? ORDER BY id DESC",
                (user_id,),
            ).fetchall()
        return [Fact(**dict(row)) for row in rows]

    def delete_fact(self, fact_id: int, user_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM user_facts WHERE id = ? AND user_id = ?", (fact_id, user_id))
            return cur.rowcount > 0

    # -- scheduled tasks -------------------------------------------------------

    def save_task(
        self,
        user_id: str,
        conversation_id: str,
        task: str,
        cron: str,
        origin: str,
        route_id: str | None = None,
    ) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT INTO scheduled_tasks(user_id, conversation_id, task, cron, origin, route_id, active, created_at)
                VALUES (?, ?, ?, ?, ?, ?, 1, ?)
                """,
                (user_id, conversation_id, task, cron, origin, route_id, _utc_now_iso()),
            )
            return int(cur.lastrowid)

    def get_active_tasks(self) -> list[ScheduledTask]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM scheduled_tasks WHERE active = 1 ORDER BY id ASC").fetchall()
        return [_to_task(row) for row in rows]

    def get_user_tasks(self, user_id: str) -> list[ScheduledTask]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM scheduled_tasks WHERE user_id = ? ORDER BY id DESC", (user_id,)
            ).fetchall()
        return [_to_task(row) for row in rows]

    def update_task(self, task_id: int, user_id: str, task: str, cron: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE scheduled_tasks SET task = ?, cron = ? WHERE id = ? AND user_id = ?",
                (task, cron, task_id, user_id),
            )
            return cur.rowcount > 0

    def delete_task(self, task_id: int, user_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM scheduled_tasks WHERE id = ? AND user_id = ?", (task_id, user_id))
            return cur.rowcount > 0

    def mark_task_run(self, task_id: int, ran_at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE scheduled_tasks SET last_run_at = ? WHERE id = ?",
                (ran_at.astimezone(timezone.utc).isoformat(), task_id),
            )

    # -- experts ---------------------------------------------------------------

    def get_expert(self, name: str) -> ExpertProfile | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM experts WHERE name = ?", (name,)).fetchone()
        return _to_expert(row) if row else None

    def upsert_expert(self, expert: ExpertProfile) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO experts(name, model, system_prompt, tools_json, experts_json, temperature, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                    model=excluded.model,
                    system_prompt=excluded.system_prompt,
                    tools_json=excluded.tools_json,
                    experts_json=excluded.experts_json,
                    temperature=excluded.temperature
                """,
                (
                    expert.name,
                    expert.model,
                    expert.system_prompt,
                    json.dumps(expert.tools or []),
                    json.dumps(expert.experts or []),
                    expert.temperature,
                    _utc_now_iso(),
                ),
            )

    def list_experts(self, include_general: bool = False) -> list[ExpertProfile]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM experts ORDER BY name ASC").fetchall()
        experts = [_to_expert(row) for row in rows]
        if include_general:
            return experts
        return [e for e in experts if e.name != GENERAL_EXPERT]

    def delete_expert(self, name: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM experts WHERE name = ?", (name,))
            return cur.rowcount > 0

    # -- runtime model table ---------------------------------------------------

    def get_model(self, name: str) -> ModelEntry | None:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM models WHERE name = ?", (name,)).fetchone()
        return ModelEntry(**dict(row)) if row else None

    def list_models(self) -> list[ModelEntry]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM models ORDER BY name ASC").fetchall()
        return [ModelEntry(**dict(row)) for row in rows]

    def upsert_model(self, entry: ModelEntry) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO models(name, api_key, base_url, created_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                    api_key=excluded.api_key,
                    base_url=excluded.base_url
                """,
                (entry.name, entry.api_key, entry.base_url, _utc_now_iso()),
            )

    def delete_model(self, name: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM models WHERE name = ?", (name,))
            return cur.rowcount > 0

    # -- tool audit log --------------------------------------------------------

    def log_tool_execution(
        self,
        session_id: str,
        tool_name: str,
        tool_input: dict[str, Any],
        tool_output: str,
        succeeded: bool,
    ) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO tool_executions(session_id, tool_name, input_json, output_text, succeeded, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    session_id,
                    tool_name,
                    json.dumps(tool_input, default=str),
                    tool_output,
                    int(succeeded),
                    _utc_now_iso(),
                ),
            )

    def list_tool_executions(self, session_id: str) -> list[dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT tool_name, input_json, output_text, succeeded FROM tool_executions"
                " WHERE session_id = ? ORDER BY id ASC",
                (session_id,),
            ).fetchall()
        return [dict(row) for row in rows]


def _to_task(row: sqlite3.Row) -> ScheduledTask:
    return ScheduledTask(
        id=int(row["id"]),
        user_id=row["user_id"],
        conversation_id=row["conversation_id"],
        task=row["task"],
        cron=row["cron"],
        origin=row["origin"],
        route_id=row["route_id"],
        active=bool(row["active"]),
        created_at=row["created_at"],
        last_run_at=row["last_run_at"],
    )


def _to_expert(row: sqlite3.Row) -> ExpertProfile:
    return ExpertProfile(
        name=row["name"],
        model=row["model"],
        system_prompt=row["system_prompt"],
        temperature=float(row["temperature"]),
        tools=json.loads(row["tools_json"] or "[]"),
        experts=json.loads(row["experts_json"] or "[]"),
        created_at=row["created_at"],
    )


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()
