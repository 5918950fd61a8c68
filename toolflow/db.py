import json
from typing import Any, Dict, List, Optional, Tuple

import aiosqlite

from .clock import iso_from_datetime, parse_iso, utc_now
from .errors import PersistenceConflict
from .schemas import MESSAGE_TYPES, ConversationMessage, ToolUsage


MESSAGE_COLUMNS = (
    "id, session_id, user_id, role, content, message_type, tools_used_json, ai_reasoning, "
    "loop_iteration, metadata_json, content_hash, created_at, updated_at"
)


def _json_dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True, default=str)


def _json_loads(value: Optional[str], default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return default


def safe_message_type(value: Any) -> Optional[str]:
    return value if value in MESSAGE_TYPES else None


def safe_tools_used(value: Any) -> Optional[List[ToolUsage]]:
    if not value:
        return None
    parsed = _json_loads(value, None) if isinstance(value, str) else value
    if not isinstance(parsed, list):
        return None
    tools: List[ToolUsage] = []
    for tool in parsed:
        if not isinstance(tool, dict):
            continue
        tools.append(
            ToolUsage(
                name=str(tool.get("name") or "Unknown Tool"),
                success=bool(tool.get("success")),
                result=tool.get("result"),
                error=tool.get("error"),
            )
        )
    return tools


def message_from_row(row: Any) -> ConversationMessage:
    data = dict(row)
    created_at = parse_iso(data.get("created_at"))
    return ConversationMessage(
        id=str(data["id"]),
        role=data["role"],
        content=data.get("content") or "",
        created_at=created_at,
        updated_at=parse_iso(data.get("updated_at")) or created_at,
        message_type=safe_message_type(data.get("message_type")),
        tools_used=safe_tools_used(data.get("tools_used_json")),
        ai_reasoning=data.get("ai_reasoning") or None,
        loop_iteration=int(data.get("loop_iteration") or 0),
        metadata=_json_loads(data.get("metadata_json"), {}),
    )


class Database:
    """SQLite-backed message and event store."""

    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS messages(
                    id TEXT PRIMARY KEY,
                    session_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    role TEXT NOT NULL,
                    content TEXT NOT NULL,
                    message_type TEXT,
                    tools_used_json TEXT,
                    ai_reasoning TEXT,
                    loop_iteration INTEGER DEFAULT 0,
                    metadata_json TEXT,
                    content_hash TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                CREATE UNIQUE INDEX IF NOT EXISTS idx_unique_message_per_session
                    ON messages(session_id, role, content, COALESCE(message_type, ''));
                CREATE INDEX IF NOT EXISTS idx_messages_session_created
                    ON messages(session_id, user_id, created_at);
                CREATE INDEX IF NOT EXISTS idx_messages_session_hash
                    ON messages(session_id, content_hash, created_at);
                CREATE TABLE IF NOT EXISTS runs(
                    run_id TEXT PRIMARY KEY,
                    session_id TEXT,
                    created_at TEXT,
                    plan_json TEXT,
                    status TEXT,
                    final_result TEXT,
                    error TEXT,
                    tools_json TEXT
                );
                CREATE TABLE IF NOT EXISTS events(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id TEXT,
                    seq INTEGER,
                    event_type TEXT,
                    payload_json TEXT,
                    created_at TEXT
                );
                """
            )
            await db.commit()

    async def execute(self, query: str, params: Tuple[Any, ...] = ()) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.execute(query, params)
            await db.commit()

    async def fetchall(self, query: str, params: Tuple[Any, ...] = ()) -> List[aiosqlite.Row]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()
            return rows

    async def fetchone(self, query: str, params: Tuple[Any, ...] = ()) -> Optional[aiosqlite.Row]:
        rows = await self.fetchall(query, params)
        return rows[0] if rows else None

    async def insert_message(
        self,
        message: ConversationMessage,
        *,
        session_id: str,
        user_id: str,
        content_hash: str,
    ) -> str:
        created_at = iso_from_datetime(message.created_at)
        updated_at = iso_from_datetime(message.updated_at) if message.updated_at else created_at
        tools = [tool.model_dump() for tool in message.tools_used] if message.tools_used else None
        try:
            await self.execute(
                f"INSERT INTO messages({MESSAGE_COLUMNS}) VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?)",
                (
                    message.id,
                    session_id,
                    user_id,
                    message.role,
                    message.content,
                    message.message_type,
                    _json_dumps(tools) if tools is not None else None,
                    message.ai_reasoning,
                    message.loop_iteration,
                    _json_dumps(message.metadata or {}),
                    content_hash,
                    created_at,
                    updated_at,
                ),
            )
        except aiosqlite.IntegrityError as exc:
            existing = await self.fetchone(
                "SELECT id FROM messages WHERE session_id=? AND role=? AND content=? "
                "AND COALESCE(message_type, '')=?",
                (session_id, message.role, message.content, message.message_type or ""),
            )
            raise PersistenceConflict(
                f"Message {message.id} collides with a stored message",
                {
                    "session_id": session_id,
                    "existing_id": existing["id"] if existing else None,
                    "reason": str(exc),
                },
            ) from exc
        return message.id

    async def get_message(self, message_id: str) -> Optional[ConversationMessage]:
        row = await self.fetchone(f"SELECT {MESSAGE_COLUMNS} FROM messages WHERE id=?", (message_id,))
        return message_from_row(row) if row else None

    async def find_recent_exact(
        self, session_id: str, role: str, content: str, since: str
    ) -> Optional[Dict[str, Any]]:
        row = await self.fetchone(
            "SELECT id, created_at FROM messages "
            "WHERE session_id=? AND role=? AND content=? AND created_at>=? "
            "ORDER BY created_at DESC LIMIT 1",
            (session_id, role, content, since),
        )
        return dict(row) if row else None

    async def find_recent_by_hash(self, session_id: str, content_hash: str, since: str) -> List[Dict[str, Any]]:
        rows = await self.fetchall(
            "SELECT id, role, content, content_hash, created_at FROM messages "
            "WHERE session_id=? AND content_hash=? AND created_at>=? ORDER BY created_at ASC",
            (session_id, content_hash, since),
        )
        return [dict(r) for r in rows]

    async def list_messages_since(
        self,
        session_id: str,
        user_id: str,
        since: Optional[str] = None,
        limit: int = 500,
    ) -> List[ConversationMessage]:
        if since:
            rows = await self.fetchall(
                f"SELECT {MESSAGE_COLUMNS} FROM messages "
                "WHERE session_id=? AND user_id=? AND (created_at>? OR updated_at>?) "
                "ORDER BY created_at ASC LIMIT ?",
                (session_id, user_id, since, since, limit),
            )
        else:
            rows = await self.fetchall(
                f"SELECT {MESSAGE_COLUMNS} FROM messages "
                "WHERE session_id=? AND user_id=? ORDER BY created_at ASC LIMIT ?",
                (session_id, user_id, limit),
            )
        return [message_from_row(r) for r in rows]

    async def update_message(
        self,
        message_id: str,
        *,
        content: Optional[str] = None,
        message_type: Optional[str] = None,
        updated_at: Optional[str] = None,
    ) -> bool:
        row = await self.fetchone("SELECT content, message_type FROM messages WHERE id=?", (message_id,))
        if not row:
            return False
        try:
            await self.execute(
                "UPDATE messages SET content=?, message_type=?, updated_at=? WHERE id=?",
                (
                    content if content is not None else row["content"],
                    message_type if message_type is not None else row["message_type"],
                    updated_at or utc_now(),
                    message_id,
                ),
            )
        except aiosqlite.IntegrityError as exc:
            raise PersistenceConflict(f"Update of {message_id} collides with a stored message") from exc
        return True

    async def count_messages(self, session_id: str) -> int:
        row = await self.fetchone("SELECT COUNT(*) AS cnt FROM messages WHERE session_id=?", (session_id,))
        return int(row["cnt"]) if row else 0

    async def create_run(self, run_id: str, plan: Dict[str, Any], session_id: Optional[str] = None) -> None:
        await self.execute(
            "INSERT INTO runs(run_id, session_id, created_at, plan_json, status) VALUES (?,?,?,?,?)",
            (run_id, session_id, utc_now(), _json_dumps(plan), plan.get("status") or "pending"),
        )

    async def finalize_run(
        self,
        run_id: str,
        plan: Dict[str, Any],
        status: str,
        *,
        final_result: Optional[str] = None,
        error: Optional[str] = None,
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> None:
        await self.execute(
            "UPDATE runs SET plan_json=?, status=?, final_result=?, error=?, tools_json=? WHERE run_id=?",
            (_json_dumps(plan), status, final_result, error, _json_dumps(tools or []), run_id),
        )

    async def get_run_summary(self, run_id: str) -> Optional[dict]:
        row = await self.fetchone(
            "SELECT run_id, session_id, created_at, plan_json, status, final_result, error, tools_json "
            "FROM runs WHERE run_id=?",
            (run_id,),
        )
        if not row:
            return None
        plan = _json_loads(row["plan_json"], {})
        return {
            "run_id": row["run_id"],
            "session_id": row["session_id"],
            "created_at": row["created_at"],
            "status": row["status"],
            "plan": plan,
            "final_result": row["final_result"],
            "error": row["error"],
            "tools": _json_loads(row["tools_json"], []),
        }

    async def next_event_seq(self, run_id: str) -> int:
        row = await self.fetchone("SELECT MAX(seq) AS max_seq FROM events WHERE run_id=?", (run_id,))
        current = row["max_seq"] if row and row["max_seq"] is not None else 0
        return int(current) + 1

    async def add_event(self, run_id: str, event_type: str, payload: dict) -> dict:
        seq = await self.next_event_seq(run_id)
        created_at = utc_now()
        await self.execute(
            "INSERT INTO events(run_id, seq, event_type, payload_json, created_at) VALUES (?,?,?,?,?)",
            (run_id, seq, event_type, _json_dumps(payload), created_at),
        )
        return {"run_id": run_id, "seq": seq, "event_type": event_type, "payload": payload, "created_at": created_at}

    async def list_events(self, run_id: str, after_seq: int = 0) -> List[dict]:
        rows = await self.fetchall(
            "SELECT run_id, seq, event_type, payload_json, created_at FROM events "
            "WHERE run_id=? AND seq>? ORDER BY seq ASC",
            (run_id, after_seq),
        )
        return [
            {
                "run_id": r["run_id"],
                "seq": r["seq"],
                "event_type": r["event_type"],
                "payload": _json_loads(r["payload_json"], {}),
                "created_at": r["created_at"],
            }
            for r in rows
        ]
