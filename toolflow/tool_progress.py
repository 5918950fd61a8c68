import asyncio
import logging
import uuid
from collections import deque
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Set

from .clock import Clock, SystemClock, TimerHandle
from .schemas import (
    ConversationMessage,
    ToolEventParseFailure,
    ToolExecution,
    ToolProgressItem,
    ToolStatusEvent,
    display_name_for,
    parse_tool_event,
)


logger = logging.getLogger("uvicorn.error")

START_DELAY_S = 0.1
EXECUTING_PROGRESS = 50
SUCCESS_RETENTION_S = 10.0
FAILURE_RETENTION_S = 15.0
MIN_EXECUTING_S = 0.5
SYNTHESIZED_START_S = 0.3
EVENT_GAP_S = 0.05
SEEN_GRACE_S = 60.0


def new_progress_id(clock: Clock) -> str:
    return f"tool-{int(clock.now() * 1000)}-{uuid.uuid4().hex[:9]}"


class ToolProgressTracker:
    """UI-facing state for in-flight tool calls. Never persisted."""

    def __init__(
        self,
        clock: Optional[Clock] = None,
        *,
        start_delay_s: float = START_DELAY_S,
        success_retention_s: float = SUCCESS_RETENTION_S,
        failure_retention_s: float = FAILURE_RETENTION_S,
    ) -> None:
        self.clock = clock or SystemClock()
        self.start_delay_s = start_delay_s
        self.success_retention_s = success_retention_s
        self.failure_retention_s = failure_retention_s
        self._items: Dict[str, ToolProgressItem] = {}
        self._timers: Dict[str, List[TimerHandle]] = {}
        self._listeners: List[Callable[[List[ToolProgressItem], bool], None]] = []

    @property
    def tools(self) -> List[ToolProgressItem]:
        return [item.model_copy() for item in self._items.values()]

    @property
    def is_active(self) -> bool:
        return bool(self._items)

    def get(self, item_id: str) -> Optional[ToolProgressItem]:
        item = self._items.get(item_id)
        return item.model_copy() if item else None

    def find_by_name(self, name: str, *, live_only: bool = False) -> Optional[ToolProgressItem]:
        for item in self._items.values():
            if item.name == name and not (live_only and item.is_terminal):
                return item.model_copy()
        return None

    def subscribe(self, listener: Callable[[List[ToolProgressItem], bool], None]) -> None:
        self._listeners.append(listener)

    def _changed(self) -> None:
        if not self._listeners:
            return
        snapshot = self.tools
        for listener in list(self._listeners):
            try:
                listener(snapshot, bool(snapshot))
            except Exception as exc:
                logger.warning("Tool progress listener failed: %s", exc)

    def _schedule(self, item_id: str, delay: float, callback: Callable[[], None]) -> None:
        handle = self.clock.call_later(delay, callback)
        self._timers.setdefault(item_id, []).append(handle)

    def _drop(self, item_id: str) -> None:
        for handle in self._timers.pop(item_id, []):
            handle.cancel()
        self._items.pop(item_id, None)

    def start(self, name: str, display_name: str, parameters: Optional[Dict[str, Any]] = None) -> str:
        item_id = new_progress_id(self.clock)
        for existing_id in [iid for iid, item in self._items.items() if item.name == name]:
            self._drop(existing_id)
        self._items[item_id] = ToolProgressItem(
            id=item_id,
            name=name,
            display_name=display_name,
            status="starting",
            parameters=dict(parameters or {}),
            progress=0,
            start_time=self.clock.now(),
        )
        logger.info("Tool %s started (%s)", name, item_id)
        self._schedule(item_id, self.start_delay_s, lambda: self._advance(item_id))
        self._changed()
        return item_id

    def _advance(self, item_id: str) -> None:
        item = self._items.get(item_id)
        if item is None or item.status != "starting":
            return
        item.status = "executing"
        item.progress = max(item.progress, EXECUTING_PROGRESS)
        self._changed()

    def update(self, item_id: str, **fields: Any) -> None:
        item = self._items.get(item_id)
        if item is None:
            return
        fields.pop("id", None)
        if "status" in fields and item.is_terminal:
            fields.pop("status")
        self._items[item_id] = item.model_copy(update=fields)
        self._changed()

    def set_progress(self, item_id: str, progress: int) -> None:
        self.update(item_id, progress=max(0, min(100, int(progress))))

    def complete(self, item_id: str, result: Any = None) -> None:
        item = self._items.get(item_id)
        if item is None or item.is_terminal:
            return
        item.status = "completed"
        item.end_time = self.clock.now()
        item.result = result
        item.progress = 100
        logger.info("Tool %s completed (%s)", item.name, item_id)
        self._schedule(item_id, self.success_retention_s, lambda: self._expire(item_id))
        self._changed()

    def fail(self, item_id: str, error: str) -> None:
        item = self._items.get(item_id)
        if item is None or item.is_terminal:
            return
        item.status = "failed"
        item.end_time = self.clock.now()
        item.error = error
        logger.info("Tool %s failed (%s): %s", item.name, item_id, error)
        self._schedule(item_id, self.failure_retention_s, lambda: self._expire(item_id))
        self._changed()

    def _expire(self, item_id: str) -> None:
        if item_id in self._items:
            self._drop(item_id)
            self._changed()

    def clear(self) -> None:
        for item_id in list(self._items):
            self._drop(item_id)
        self._timers.clear()
        self._changed()


class ToolProgressFeed:
    """Single-consumer FIFO that turns tool status events into tracker calls.

    Events arrive from plan step updates and from ``tool-executing`` transcript
    rows, possibly duplicated or out of order. Each event id is processed once.
    A fresh "executing" item stays up for at least ``min_executing_s``; a
    terminal event without a live item gets a synthesized start first.
    """

    def __init__(
        self,
        tracker: ToolProgressTracker,
        *,
        min_executing_s: float = MIN_EXECUTING_S,
        synthesized_start_s: float = SYNTHESIZED_START_S,
        event_gap_s: float = EVENT_GAP_S,
        seen_grace_s: float = SEEN_GRACE_S,
    ) -> None:
        self.tracker = tracker
        self.clock = tracker.clock
        self.min_executing_s = min_executing_s
        self.synthesized_start_s = synthesized_start_s
        self.event_gap_s = event_gap_s
        self.seen_grace_s = seen_grace_s
        self._queue: Deque[ToolStatusEvent] = deque()
        # id -> clock time it was recorded
        self._seen: Dict[str, float] = {}
        self._finished: Dict[str, float] = {}
        self._draining = False
        self._task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> int:
        return len(self._queue)

    @property
    def draining(self) -> bool:
        return self._draining

    def enqueue(self, event: ToolStatusEvent) -> bool:
        if event.event_id in self._seen:
            return False
        self._seen[event.event_id] = self.clock.now()
        self._queue.append(event)
        if not self._draining:
            self._draining = True
            self._task = asyncio.create_task(self._drain())
        return True

    def enqueue_execution(self, execution: ToolExecution) -> bool:
        if execution.status == "pending":
            return False
        event = ToolStatusEvent(
            event_id=f"{execution.id}:{execution.status}",
            tool_name=execution.tool,
            display_name=display_name_for(execution.tool),
            status=execution.status,
            parameters=execution.parameters,
            result=execution.result,
            error=execution.error,
        )
        return self.enqueue(event)

    def sync_with_transcript(self, messages: Iterable[ConversationMessage]) -> int:
        """Feed tool rows from the transcript; reset when no user turn exists yet."""
        messages = list(messages)
        if not any(m.role == "user" for m in messages):
            self.reset()
            return 0
        added = 0
        present: Set[str] = set()
        for message in messages:
            if message.message_type != "tool-executing":
                continue
            parsed = parse_tool_event(message.content, message.id)
            if isinstance(parsed, ToolEventParseFailure):
                logger.warning("Skipping tool message %s: %s", message.id, parsed.reason)
                continue
            present.add(parsed.event_id)
            present.add(parsed.event_id.rsplit(":", 1)[0])
            if self.enqueue(parsed):
                added += 1
        self._prune(present)
        return added

    def _prune(self, keep: Set[str]) -> None:
        """Forget ids no longer in the transcript once the grace period is over.

        Step updates are remembered for ``seen_grace_s`` so their transcript
        rows, arriving a poll later, are not replayed.
        """
        cutoff = self.clock.now() - self.seen_grace_s
        keep = keep | {e.event_id for e in self._queue}
        for ids in (self._seen, self._finished):
            for key in [k for k, at in ids.items() if at < cutoff and k not in keep]:
                del ids[key]

    def reset(self) -> None:
        self._queue.clear()
        self._seen.clear()
        self._finished.clear()
        self.tracker.clear()

    async def wait_idle(self) -> None:
        while self._task is not None and not self._task.done():
            await asyncio.shield(self._task)

    async def _drain(self) -> None:
        try:
            while self._queue:
                event = self._queue.popleft()
                try:
                    await self._process(event)
                except Exception as exc:
                    logger.warning("Tool event %s failed: %s", event.event_id, exc)
                if self._queue:
                    await self.clock.sleep(self.event_gap_s)
        finally:
            self._draining = False

    async def _process(self, event: ToolStatusEvent) -> None:
        call_id = event.event_id.rsplit(":", 1)[0]
        live = self.tracker.find_by_name(event.tool_name, live_only=True)
        if event.status == "executing":
            # a late start for a call that already finished is stale
            if live is not None or call_id in self._finished:
                return
            self.tracker.start(event.tool_name, event.display_name, event.parameters)
            await self.clock.sleep(self.min_executing_s)
            return
        if live is None:
            item_id = self.tracker.start(event.tool_name, event.display_name, event.parameters)
            await self.clock.sleep(self.synthesized_start_s)
        else:
            item_id = live.id
        self._finished[call_id] = self.clock.now()
        if event.status == "completed":
            self.tracker.complete(item_id, event.result)
        else:
            self.tracker.fail(item_id, event.error or "Tool failed")
