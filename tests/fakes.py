import asyncio
import heapq
from typing import Any, Callable, Dict, List, Optional, Tuple

from toolflow.clock import iso_from_datetime
from toolflow.errors import PersistenceConflict
from toolflow.schemas import ConversationMessage, GatewayResponse


class _ManualTimer:
    def __init__(self, callback: Callable[[], None]) -> None:
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualClock:
    """Virtual time. Nothing scheduled on it fires until ``advance`` is awaited."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self._now = start
        self._timers: List[Tuple[float, int, _ManualTimer]] = []
        self._seq = 0

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[[], None]) -> _ManualTimer:
        timer = _ManualTimer(callback)
        heapq.heappush(self._timers, (self._now + max(0.0, delay), self._seq, timer))
        self._seq += 1
        return timer

    async def sleep(self, seconds: float) -> None:
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        fut = asyncio.get_running_loop().create_future()

        def wake() -> None:
            if not fut.done():
                fut.set_result(None)

        handle = self.call_later(seconds, wake)
        try:
            await fut
        finally:
            handle.cancel()

    async def settle(self, rounds: int = 20) -> None:
        for _ in range(rounds):
            await asyncio.sleep(0)

    async def advance(self, seconds: float) -> None:
        target = self._now + seconds
        await self.settle()
        while self._timers and self._timers[0][0] <= target:
            when, _, timer = heapq.heappop(self._timers)
            if timer.cancelled:
                continue
            self._now = max(self._now, when)
            timer.callback()
            await self.settle()
        self._now = target
        await self.settle()


class FakeToolGateway:
    def __init__(self, responses: Optional[Dict[str, Any]] = None, delay_s: float = 0.0) -> None:
        self.responses = responses or {}
        self.delay_s = delay_s
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False

    async def execute(self, tool: str, parameters: Dict[str, Any]) -> GatewayResponse:
        self.calls.append((tool, dict(parameters)))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay_s)
            outcome = self.responses.get(tool, {"status": "completed", "result": f"{tool} ok"})
            if callable(outcome):
                outcome = outcome(parameters)
            if isinstance(outcome, Exception):
                raise outcome
            if isinstance(outcome, GatewayResponse):
                return outcome
            return GatewayResponse.model_validate(outcome)
        finally:
            self.in_flight -= 1

    async def close(self) -> None:
        self.closed = True


class FlakyStore:
    """In-memory message store with switchable failures."""

    def __init__(self) -> None:
        self.rows: List[Dict[str, Any]] = []
        self.fail_inserts = 0
        self.fail_lookups = False
        self.fail_polls = 0
        self.insert_calls = 0
        self.poll_calls: List[Optional[str]] = []
        self.report_conflict_ids = True

    def _row(self, message: ConversationMessage, session_id: str, user_id: str, content_hash: str = "") -> Dict[str, Any]:
        created_at = iso_from_datetime(message.created_at)
        return {
            "id": message.id,
            "session_id": session_id,
            "user_id": user_id,
            "content_hash": content_hash,
            "created_at": created_at,
            "updated_at": iso_from_datetime(message.updated_at) if message.updated_at else created_at,
            "message": message.model_copy(deep=True),
        }

    def _collides(self, message: ConversationMessage, session_id: str) -> Optional[str]:
        key = (message.role, message.content, message.message_type or "")
        for row in self.rows:
            stored = row["message"]
            if row["session_id"] == session_id and (stored.role, stored.content, stored.message_type or "") == key:
                return row["id"]
        return None

    def add_remote(self, message: ConversationMessage, session_id: str, user_id: str) -> None:
        self.rows.append(self._row(message, session_id, user_id))

    def touch(self, message_id: str, content: str, updated_at) -> None:
        for row in self.rows:
            if row["id"] == message_id:
                row["message"] = row["message"].model_copy(update={"content": content, "updated_at": updated_at})
                row["updated_at"] = iso_from_datetime(updated_at)

    async def insert_message(
        self, message: ConversationMessage, *, session_id: str, user_id: str, content_hash: str
    ) -> str:
        self.insert_calls += 1
        if self.fail_inserts:
            self.fail_inserts -= 1
            raise RuntimeError("store unavailable")
        existing_id = self._collides(message, session_id)
        if existing_id:
            details = {"existing_id": existing_id if self.report_conflict_ids else None}
            raise PersistenceConflict(f"Message {message.id} collides with a stored message", details)
        self.rows.append(self._row(message, session_id, user_id, content_hash))
        return message.id

    async def find_recent_exact(self, session_id: str, role: str, content: str, since: str) -> Optional[Dict[str, Any]]:
        if self.fail_lookups:
            raise RuntimeError("lookup timed out")
        matches = [
            r
            for r in self.rows
            if r["session_id"] == session_id
            and r["message"].role == role
            and r["message"].content == content
            and r["created_at"] >= since
        ]
        if not matches:
            return None
        latest = max(matches, key=lambda r: r["created_at"])
        return {"id": latest["id"], "created_at": latest["created_at"]}

    async def find_recent_by_hash(self, session_id: str, content_hash: str, since: str) -> List[Dict[str, Any]]:
        if self.fail_lookups:
            raise RuntimeError("lookup timed out")
        return [
            {
                "id": r["id"],
                "role": r["message"].role,
                "content": r["message"].content,
                "content_hash": r["content_hash"],
                "created_at": r["created_at"],
            }
            for r in self.rows
            if r["session_id"] == session_id and r["content_hash"] == content_hash and r["created_at"] >= since
        ]

    async def get_message(self, message_id: str) -> Optional[ConversationMessage]:
        for row in self.rows:
            if row["id"] == message_id:
                return row["message"].model_copy(deep=True)
        return None

    async def list_messages_since(
        self, session_id: str, user_id: str, since: Optional[str] = None, limit: int = 500
    ) -> List[ConversationMessage]:
        self.poll_calls.append(since)
        if self.fail_polls:
            self.fail_polls -= 1
            raise RuntimeError("network down")
        rows = [
            r
            for r in self.rows
            if r["session_id"] == session_id
            and r["user_id"] == user_id
            and (since is None or r["created_at"] > since or r["updated_at"] > since)
        ]
        rows.sort(key=lambda r: r["created_at"])
        return [r["message"].model_copy(deep=True) for r in rows[:limit]]
