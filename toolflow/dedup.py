import logging
import zlib
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Protocol, Set

from .clock import Clock, SystemClock, to_iso
from .errors import PersistenceConflict
from .schemas import ConversationMessage


logger = logging.getLogger("uvicorn.error")

EXACT_WINDOW_S = 10.0
HASH_WINDOW_S = 60.0


class PersistOutcome(str, Enum):
    STORED = "stored"
    DUPLICATE = "duplicate"
    FAILED = "failed"


@dataclass
class PersistResult:
    outcome: PersistOutcome
    message_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome is not PersistOutcome.FAILED


class MessageStore(Protocol):
    async def insert_message(
        self, message: ConversationMessage, *, session_id: str, user_id: str, content_hash: str
    ) -> str: ...

    async def find_recent_exact(self, session_id: str, role: str, content: str, since: str) -> Optional[dict]: ...

    async def find_recent_by_hash(self, session_id: str, content_hash: str, since: str) -> list: ...

    async def get_message(self, message_id: str) -> Optional[ConversationMessage]: ...


def message_hash(content: str, role: str, session_id: str) -> str:
    """CRC-32 bucket key for duplicate detection. Not a security primitive."""
    value = zlib.crc32(f"{content}{role}{session_id}".encode("utf-8")) & 0xFFFFFFFF
    return f"{value:08x}"


def generate_message_id(content: str, role: str, session_id: str, clock: Optional[Clock] = None) -> str:
    millis = int((clock or SystemClock()).now() * 1000)
    digest = zlib.crc32(f"{content}-{role}-{session_id}-{millis}".encode("utf-8")) & 0xFFFFFFFF
    return f"{role}-{millis}-{digest:08x}"


class MessageDeduplicator:
    """The single gate every message write goes through.

    A write is a duplicate when the same (session, role, content) was stored in
    the last ``exact_window_s`` seconds, when a row with the same content hash
    was stored in the last ``hash_window_s`` seconds, or when the store's
    uniqueness constraint rejects the insert.
    """

    def __init__(
        self,
        store: MessageStore,
        *,
        clock: Optional[Clock] = None,
        exact_window_s: float = EXACT_WINDOW_S,
        hash_window_s: float = HASH_WINDOW_S,
    ) -> None:
        self.store = store
        self.clock = clock or SystemClock()
        self.exact_window_s = exact_window_s
        self.hash_window_s = hash_window_s

    async def persist(self, message: ConversationMessage, session_id: str, user_id: str) -> PersistResult:
        content_hash = message_hash(message.content, message.role, session_id)
        now = self.clock.now()
        try:
            existing_id = await self._find_duplicate(message, session_id, content_hash, now)
        except Exception as exc:
            # The unique index still guards the insert below.
            logger.warning("Duplicate check for %s failed: %s", message.id, exc)
            existing_id = None
        if existing_id:
            logger.info("Message %s already stored as %s", message.id, existing_id)
            return PersistResult(PersistOutcome.DUPLICATE, existing_id)
        try:
            stored_id = await self.store.insert_message(
                message, session_id=session_id, user_id=user_id, content_hash=content_hash
            )
        except PersistenceConflict as exc:
            existing_id = exc.details.get("existing_id")
            logger.info("Message %s rejected by uniqueness constraint (stored as %s)", message.id, existing_id)
            return PersistResult(PersistOutcome.DUPLICATE, existing_id)
        except Exception as exc:
            logger.warning("Persisting message %s failed: %s", message.id, exc)
            return PersistResult(PersistOutcome.FAILED, message.id, str(exc) or exc.__class__.__name__)
        return PersistResult(PersistOutcome.STORED, stored_id)

    async def _find_duplicate(
        self, message: ConversationMessage, session_id: str, content_hash: str, now: float
    ) -> Optional[str]:
        exact = await self.store.find_recent_exact(
            session_id, message.role, message.content, to_iso(now - self.exact_window_s)
        )
        if exact:
            return str(exact["id"])
        candidates = await self.store.find_recent_by_hash(session_id, content_hash, to_iso(now - self.hash_window_s))
        for row in candidates:
            row_hash = row.get("content_hash") or message_hash(row.get("content") or "", row.get("role") or "", session_id)
            if row_hash == content_hash:
                return str(row["id"])
        return None


@dataclass
class _SeenEntry:
    seen_at: float
    message_type: Optional[str]
    loop_iteration: int


class RecentMessageCache:
    """In-process guard against double submits before anything reaches the store."""

    def __init__(self, clock: Optional[Clock] = None, *, window_s: float = EXACT_WINDOW_S, max_entries: int = 100):
        self.clock = clock or SystemClock()
        self.window_s = window_s
        self.max_entries = max_entries
        self._seen: Dict[str, _SeenEntry] = {}
        self._in_progress: Set[str] = set()

    @staticmethod
    def key_for(message: ConversationMessage) -> str:
        raw = f"{message.role}-{message.content[:200]}-{message.message_type or 'none'}-{message.loop_iteration}"
        return f"{zlib.crc32(raw.encode('utf-8')) & 0xFFFFFFFF:08x}"

    def should_process(self, message: ConversationMessage) -> bool:
        key = self.key_for(message)
        now = self.clock.now()
        existing = self._seen.get(key)
        if existing is not None and now - existing.seen_at < self.window_s:
            return False
        self._seen[key] = _SeenEntry(now, message.message_type, message.loop_iteration)
        self.cleanup()
        return True

    def forget(self, message: ConversationMessage) -> None:
        self._seen.pop(self.key_for(message), None)

    def is_in_progress(self, request_key: str) -> bool:
        return request_key in self._in_progress

    def mark_in_progress(self, request_key: str) -> None:
        self._in_progress.add(request_key)

    def mark_completed(self, request_key: str) -> None:
        self._in_progress.discard(request_key)

    def cleanup(self) -> None:
        if len(self._seen) <= self.max_entries:
            return
        newest = sorted(self._seen.items(), key=lambda kv: kv[1].seen_at, reverse=True)[: self.max_entries]
        self._seen = dict(newest)

    def clear(self) -> None:
        self._seen.clear()
        self._in_progress.clear()

    def __len__(self) -> int:
        return len(self._seen)
