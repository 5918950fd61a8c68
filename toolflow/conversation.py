import logging
from typing import Any, Dict, List, Optional, Protocol

from .clock import Clock, SystemClock, to_datetime
from .config import AppSettings
from .dedup import (
    MessageDeduplicator,
    PersistOutcome,
    PersistResult,
    RecentMessageCache,
    generate_message_id,
)
from .schemas import ConversationMessage, ToolUsage
from .poller import ConversationPoller, Transcript
from .tool_progress import ToolProgressFeed, ToolProgressTracker


logger = logging.getLogger("uvicorn.error")


class Notifier(Protocol):
    def notify(self, level: str, message: str) -> None: ...


class LoggingNotifier:
    def notify(self, level: str, message: str) -> None:
        logger.log(logging.ERROR if level == "error" else logging.INFO, "%s", message)


class ConversationSync:
    """Keeps one session's transcript, the store and the tool progress view in step.

    Writes are optimistic: a message shows up in the transcript before the
    store answers and is retracted when persistence fails. Rows written
    elsewhere arrive through the poller, and ``tool-executing`` rows among
    them are replayed into the progress feed.
    """

    def __init__(
        self,
        store: Any,
        *,
        session_id: str,
        user_id: str,
        clock: Optional[Clock] = None,
        settings: Optional[AppSettings] = None,
        notifier: Optional[Notifier] = None,
        feed: Optional[ToolProgressFeed] = None,
    ) -> None:
        settings = settings or AppSettings()
        self.store = store
        self.session_id = session_id
        self.user_id = user_id
        self.clock = clock or SystemClock()
        self.notifier = notifier or LoggingNotifier()
        self.transcript = Transcript()
        self.deduplicator = MessageDeduplicator(
            store,
            clock=self.clock,
            exact_window_s=settings.dedup.exact_window_s,
            hash_window_s=settings.dedup.hash_window_s,
        )
        self.recent = RecentMessageCache(
            self.clock,
            window_s=settings.dedup.recent_cache_window_s,
            max_entries=settings.dedup.recent_cache_max_entries,
        )
        if feed is None:
            progress = settings.progress
            tracker = ToolProgressTracker(
                self.clock,
                start_delay_s=progress.start_delay_s,
                success_retention_s=progress.success_retention_s,
                failure_retention_s=progress.failure_retention_s,
            )
            feed = ToolProgressFeed(
                tracker,
                min_executing_s=progress.min_executing_s,
                synthesized_start_s=progress.synthesized_start_s,
                event_gap_s=progress.event_gap_s,
                seen_grace_s=progress.seen_grace_s,
            )
        self.feed = feed
        self.poller = ConversationPoller(
            store,
            session_id=session_id,
            user_id=user_id,
            transcript=self.transcript,
            clock=self.clock,
            interval_s=settings.polling.interval_s,
            lookback_s=settings.polling.lookback_s,
            limit=settings.polling.page_limit,
            on_messages=self._on_poll,
        )

    @property
    def messages(self) -> List[ConversationMessage]:
        return self.transcript.messages

    @property
    def tracker(self) -> ToolProgressTracker:
        return self.feed.tracker

    def _on_poll(self, messages: List[ConversationMessage]) -> None:
        self.feed.sync_with_transcript(messages)

    async def load(self) -> List[ConversationMessage]:
        rows = await self.store.list_messages_since(self.session_id, self.user_id, None, self.poller.limit)
        self.transcript.merge(rows)
        self.feed.sync_with_transcript(self.transcript.messages)
        return self.transcript.messages

    def set_active(self, active: bool) -> None:
        self.poller.set_active(active)

    async def add_message(
        self,
        role: str,
        content: str,
        *,
        message_type: Optional[str] = None,
        tools_used: Optional[List[ToolUsage]] = None,
        ai_reasoning: Optional[str] = None,
        loop_iteration: int = 0,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> PersistResult:
        now = self.clock.now()
        message = ConversationMessage(
            id=generate_message_id(content, role, self.session_id, self.clock),
            role=role,
            content=content,
            created_at=to_datetime(now),
            updated_at=to_datetime(now),
            message_type=message_type,
            tools_used=tools_used,
            ai_reasoning=ai_reasoning,
            loop_iteration=loop_iteration,
            metadata=dict(metadata or {}),
        )
        if not self.recent.should_process(message):
            logger.info("Dropping repeated %s message in session %s", role, self.session_id)
            return PersistResult(PersistOutcome.DUPLICATE, None)
        self.transcript.add_local(message)
        result = await self.deduplicator.persist(message, self.session_id, self.user_id)
        if result.outcome is PersistOutcome.STORED:
            self.transcript.mark_synced(message.id)
        elif result.outcome is PersistOutcome.DUPLICATE:
            if result.message_id == message.id:
                self.transcript.mark_synced(message.id)
            elif result.message_id:
                await self._adopt_original(message, result.message_id)
        else:
            self.transcript.remove(message.id)
            self.recent.forget(message)
            self.notifier.notify("error", f"Message could not be saved: {result.error}")
        return result

    async def _adopt_original(self, local: ConversationMessage, original_id: str) -> None:
        # The original may be older than the poll cursor, so fetch it directly.
        # Without it the local copy stays until a merge replaces it.
        try:
            original = await self.store.get_message(original_id)
        except Exception as exc:
            logger.warning("Fetching stored message %s failed: %s", original_id, exc)
            return
        if original is None:
            return
        self.transcript.remove(local.id)
        if self.transcript.merge([original]):
            self.feed.sync_with_transcript(self.transcript.messages)

    async def switch_session(self, session_id: str) -> None:
        await self.poller.stop()
        self.session_id = session_id
        self.poller.session_id = session_id
        self.transcript.clear()
        self.recent.clear()
        self.feed.reset()

    async def close(self) -> None:
        await self.poller.stop()
        await self.feed.wait_idle()
