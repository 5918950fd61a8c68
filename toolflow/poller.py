import asyncio
import inspect
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Set, Union

from .clock import Clock, SystemClock, iso_from_datetime, to_iso
from .errors import TransientSyncFailure
from .schemas import ConversationMessage


logger = logging.getLogger("uvicorn.error")

POLL_INTERVAL_S = 2.0
LOOKBACK_S = 60.0

MessagesCallback = Callable[[List[ConversationMessage]], Union[None, Awaitable[None]]]


class MessageSource(Protocol):
    async def list_messages_since(
        self, session_id: str, user_id: str, since: Optional[str] = None, limit: int = 500
    ) -> List[ConversationMessage]: ...


class Transcript:
    """Ordered local view of one session's messages, keyed by message id."""

    def __init__(self) -> None:
        self._messages: List[ConversationMessage] = []
        self._index: Dict[str, int] = {}
        self._synced: Set[str] = set()

    def __len__(self) -> int:
        return len(self._messages)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._index

    @property
    def messages(self) -> List[ConversationMessage]:
        return list(self._messages)

    def get(self, message_id: str) -> Optional[ConversationMessage]:
        idx = self._index.get(message_id)
        return self._messages[idx] if idx is not None else None

    def _reindex(self) -> None:
        # sort is stable, so equal timestamps keep arrival order
        self._messages.sort(key=lambda m: m.created_at)
        self._index = {m.id: i for i, m in enumerate(self._messages)}

    def add_local(self, message: ConversationMessage) -> None:
        if message.id in self._index:
            return
        self._messages.append(message)
        self._reindex()

    def mark_synced(self, message_id: str) -> None:
        if message_id in self._index:
            self._synced.add(message_id)

    def remove(self, message_id: str) -> Optional[ConversationMessage]:
        idx = self._index.get(message_id)
        if idx is None:
            return None
        removed = self._messages.pop(idx)
        self._synced.discard(message_id)
        self._reindex()
        return removed

    def _pending_match(self, message: ConversationMessage) -> Optional[int]:
        key = (message.role, message.content, message.message_type)
        for idx, local in enumerate(self._messages):
            if local.id not in self._synced and (local.role, local.content, local.message_type) == key:
                return idx
        return None

    def merge(self, incoming: List[ConversationMessage]) -> List[ConversationMessage]:
        """Apply fetched rows; known ids are replaced in place, never appended twice.

        A row matching an unsynced local copy (same role, content and type)
        takes that copy's place, since the store keeps one such row per session.
        """
        changed: List[ConversationMessage] = []
        for message in incoming:
            idx = self._index.get(message.id)
            if idx is None:
                idx = self._pending_match(message)
                if idx is not None:
                    self._index.pop(self._messages[idx].id, None)
                    self._index[message.id] = idx
                    self._messages[idx] = message
                    changed.append(message)
                    self._synced.add(message.id)
                    continue
                self._index[message.id] = len(self._messages)
                self._messages.append(message)
                changed.append(message)
            elif self._messages[idx] != message:
                self._messages[idx] = message
                changed.append(message)
            self._synced.add(message.id)
        if changed:
            self._reindex()
        return changed

    def last_timestamp(self) -> Optional[datetime]:
        stamps = [m.last_activity for m in self._messages if m.id in self._synced]
        return max(stamps) if stamps else None

    def clear(self) -> None:
        self._messages.clear()
        self._index.clear()
        self._synced.clear()


class ConversationPoller:
    """Fetches new or updated rows for one session while active.

    Each tick asks the store for rows with ``created_at`` or ``updated_at``
    after the newest synced timestamp (or ``now - lookback_s`` on an empty
    transcript) and merges them. A failed tick is logged and the next tick
    retries.
    """

    def __init__(
        self,
        store: MessageSource,
        *,
        session_id: str,
        user_id: str,
        transcript: Optional[Transcript] = None,
        clock: Optional[Clock] = None,
        interval_s: float = POLL_INTERVAL_S,
        lookback_s: float = LOOKBACK_S,
        limit: int = 500,
        on_messages: Optional[MessagesCallback] = None,
    ) -> None:
        self.store = store
        self.session_id = session_id
        self.user_id = user_id
        self.transcript = transcript if transcript is not None else Transcript()
        self.clock = clock or SystemClock()
        self.interval_s = interval_s
        self.lookback_s = lookback_s
        self.limit = limit
        self.on_messages = on_messages
        self.polls = 0
        self.failures = 0
        self._active = False
        self._task: Optional[asyncio.Task] = None

    @property
    def active(self) -> bool:
        return self._active

    def _since(self) -> str:
        newest = self.transcript.last_timestamp()
        if newest is not None:
            return iso_from_datetime(newest)
        return to_iso(self.clock.now() - self.lookback_s)

    async def poll_once(self) -> List[ConversationMessage]:
        self.polls += 1
        since = self._since()
        try:
            rows = await self.store.list_messages_since(self.session_id, self.user_id, since, self.limit)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.failures += 1
            failure = TransientSyncFailure(
                f"Poll for session {self.session_id} failed: {exc}", {"since": since}
            )
            logger.warning("%s", failure.message)
            return []
        changed = self.transcript.merge(rows)
        if changed and self.on_messages:
            try:
                result: Any = self.on_messages(self.transcript.messages)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                self.failures += 1
                logger.exception("Message callback for session %s failed", self.session_id)
        return changed

    async def _loop(self) -> None:
        while self._active:
            await self.poll_once()
            if not self._active:
                break
            await self.clock.sleep(self.interval_s)

    def set_active(self, active: bool) -> None:
        if active:
            self._active = True
            if self._task is None or self._task.done():
                self._task = asyncio.create_task(self._loop())
            return
        self._active = False
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def stop(self) -> None:
        task = self._task
        self.set_active(False)
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass
