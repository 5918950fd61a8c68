import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .conversation import ConversationSync
from .db import Database
from .errors import PlanCancelled, ToolExecutionFailure, ToolflowError
from .plan_executor import PlanExecutor
from .schemas import MultiToolPlan, ToolExecution, display_name_for


logger = logging.getLogger("uvicorn.error")

TERMINAL_RUN_EVENTS = {"run_completed", "run_failed"}


def new_run_id() -> str:
    return str(uuid.uuid4())


@dataclass
class RunChannel:
    session_id: Optional[str] = None
    listeners: List[asyncio.Queue] = field(default_factory=list)
    ended: bool = False


class EventBus:
    """Persists run events, then hands them to the run's live listeners.

    The database copy is what late listeners replay; a listener queue only
    sees events emitted after it subscribed. A channel is dropped once its
    run has ended and the last listener has left. A listener that falls
    ``max_backlog`` events behind loses the oldest ones.
    """

    def __init__(self, db: Database, *, max_backlog: int = 256):
        self.db = db
        self.max_backlog = max_backlog
        self._channels: Dict[str, RunChannel] = {}

    @property
    def run_ids(self) -> List[str]:
        return list(self._channels)

    def listener_count(self, run_id: str) -> int:
        channel = self._channels.get(run_id)
        return len(channel.listeners) if channel else 0

    def register_run(self, run_id: str, session_id: Optional[str]) -> None:
        if run_id and session_id:
            self._channels.setdefault(run_id, RunChannel()).session_id = session_id

    def _release(self, run_id: str) -> None:
        channel = self._channels.get(run_id)
        if channel is not None and not channel.listeners and (channel.ended or channel.session_id is None):
            del self._channels[run_id]

    def _deliver(self, run_id: str, queue: asyncio.Queue, event: dict) -> None:
        if queue.full():
            dropped = queue.get_nowait()
            logger.warning("Run %s listener lagging; dropped event %s", run_id, dropped.get("seq"))
        queue.put_nowait(event)

    async def emit(self, run_id: str, event_type: str, payload: dict) -> dict:
        channel = self._channels.get(run_id)
        body = dict(payload or {})
        body.setdefault("run_id", run_id)
        if channel is not None and channel.session_id:
            body.setdefault("session_id", channel.session_id)
        stored = await self.db.add_event(run_id, event_type, body)
        if channel is not None:
            for queue in list(channel.listeners):
                self._deliver(run_id, queue, stored)
            if event_type in TERMINAL_RUN_EVENTS:
                channel.ended = True
                self._release(run_id)
        return stored

    async def subscribe(self, run_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_backlog)
        self._channels.setdefault(run_id, RunChannel()).listeners.append(queue)
        return queue

    async def unsubscribe(self, run_id: str, queue: asyncio.Queue) -> None:
        channel = self._channels.get(run_id)
        if channel is None:
            return
        if queue in channel.listeners:
            channel.listeners.remove(queue)
        self._release(run_id)


@dataclass
class RunOutcome:
    run_id: str
    plan: MultiToolPlan
    status: str
    final_result: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "plan_id": self.plan.id,
            "status": self.status,
            "final_result": self.final_result,
            "error": self.error,
        }


def tool_event_content(execution: ToolExecution) -> str:
    """Body of a ``tool-executing`` message for one step transition."""
    payload = {
        "toolCallId": execution.id,
        "status": execution.status,
        "toolName": execution.tool,
        "displayName": display_name_for(execution.tool),
        "parameters": execution.parameters,
        "result": execution.result,
        "error": execution.error,
    }
    return json.dumps(payload, ensure_ascii=True, default=str)


async def run_plan(
    plan: MultiToolPlan,
    *,
    executor: PlanExecutor,
    conversation: Optional[ConversationSync] = None,
    bus: Optional[EventBus] = None,
    run_id: Optional[str] = None,
    stop_event: Optional[asyncio.Event] = None,
) -> RunOutcome:
    """Execute a plan and mirror its progress into the conversation.

    Polling is switched on for the duration of the run. Every step transition
    is pushed to the progress feed and persisted as a ``tool-executing``
    message; the run ends with the final answer or a readable failure note.
    """
    run_id = run_id or new_run_id()

    async def emit(event_type: str, payload: Dict[str, Any]) -> None:
        if bus is None:
            return
        try:
            await bus.emit(run_id, event_type, payload)
        except Exception as exc:
            logger.warning("Run %s event %s not delivered: %s", run_id, event_type, exc)

    async def on_step_update(execution: ToolExecution) -> None:
        if conversation is None:
            return
        conversation.feed.enqueue_execution(execution)
        await conversation.add_message("assistant", tool_event_content(execution), message_type="tool-executing")

    async def post(role: str, content: str, message_type: Optional[str]) -> None:
        if conversation is not None:
            await conversation.add_message(role, content, message_type=message_type)

    if conversation is not None:
        conversation.set_active(True)
    await emit("run_started", {"plan_id": plan.id, "title": plan.title, "steps": len(plan.executions)})
    try:
        try:
            await executor.run(plan, on_step_update=on_step_update, stop_event=stop_event)
        except PlanCancelled as exc:
            outcome = RunOutcome(run_id, plan, "cancelled", error=exc.message)
            await post("system", exc.message, None)
        except ToolExecutionFailure as exc:
            outcome = RunOutcome(run_id, plan, "failed", error=exc.message)
            await post("system", exc.message, None)
        except ToolflowError as exc:
            outcome = RunOutcome(run_id, plan, "failed", error=exc.message)
            await post("system", f"Plan could not run: {exc.message}", None)
        except Exception as exc:
            logger.exception("Run %s crashed", run_id)
            error = plan.error or f"Plan aborted: {str(exc) or exc.__class__.__name__}"
            outcome = RunOutcome(run_id, plan, "failed", error=error)
            await post("system", error, None)
        else:
            outcome = RunOutcome(run_id, plan, "completed", final_result=plan.final_result)
            await post("assistant", plan.final_result or "", "response")
    finally:
        if conversation is not None:
            conversation.set_active(False)

    if outcome.status == "completed":
        await emit("run_completed", outcome.to_dict())
    else:
        await emit("run_failed", outcome.to_dict())
    logger.info("Run %s finished: %s", run_id, outcome.status)
    return outcome
