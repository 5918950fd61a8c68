import asyncio
import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request, Response
from fastapi.responses import StreamingResponse

from .clock import Clock, SystemClock, iso_from_datetime, to_datetime
from .config import AppSettings, CONFIG_PATH, load_settings, save_settings
from .conversation import ConversationSync
from .db import Database
from .dedup import MessageDeduplicator, PersistOutcome, generate_message_id
from .errors import PlanInvalid
from .orchestrator import TERMINAL_RUN_EVENTS, EventBus, RunOutcome, new_run_id, run_plan
from .plan_executor import PlanExecutor
from .planner import build_plan
from .schemas import ConversationMessage, MessageCreate, MultiToolPlan, PlanCreate
from .tool_gateway import HttpToolGateway, ToolGateway


logger = logging.getLogger("uvicorn.error")


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_event_bus(request: Request) -> EventBus:
    return request.app.state.bus


def get_deduplicator(request: Request) -> MessageDeduplicator:
    return request.app.state.deduplicator


def get_user_id(x_user_id: Optional[str] = Header(default=None)) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="X-User-Id header required.")
    return x_user_id.strip()


def sse_format(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


def _live_view(plan: MultiToolPlan) -> Dict[str, Any]:
    return {"status": plan.status, "plan": plan.model_dump(mode="json"), "outcome": None}


def _summary_view(summary: Dict[str, Any]) -> Dict[str, Any]:
    outcome = {
        "run_id": summary["run_id"],
        "plan_id": summary["plan"].get("id"),
        "status": summary["status"],
        "final_result": summary["final_result"],
        "error": summary["error"],
    }
    return {"status": summary["status"], "plan": summary["plan"], "outcome": outcome}


GATEWAY_FIELDS = ("tool_gateway_url", "tool_gateway_api_key", "tool_gateway_timeout_s", "tool_gateway_max_retries")


def make_gateway(settings: AppSettings) -> HttpToolGateway:
    return HttpToolGateway(
        settings.tool_gateway_url,
        settings.tool_gateway_api_key,
        timeout_s=settings.tool_gateway_timeout_s,
        max_retries=settings.tool_gateway_max_retries,
    )


def make_deduplicator(db: Database, clock: Clock, settings: AppSettings) -> MessageDeduplicator:
    return MessageDeduplicator(
        db,
        clock=clock,
        exact_window_s=settings.dedup.exact_window_s,
        hash_window_s=settings.dedup.hash_window_s,
    )


def apply_settings(state: Any, new_settings: AppSettings) -> None:
    """Swap in new settings and rebuild the services derived from them."""
    old_settings = state.settings
    state.settings = new_settings
    state.deduplicator = make_deduplicator(state.db, state.clock, new_settings)
    if not state.owns_gateway:
        return
    if any(getattr(old_settings, f) != getattr(new_settings, f) for f in GATEWAY_FIELDS):
        # Runs already in flight keep the old client; it is closed on shutdown.
        state.retired_gateways.append(state.gateway)
        state.gateway = make_gateway(new_settings)


router = APIRouter()


@router.get("/settings")
async def read_settings(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.post("/settings")
async def update_settings(
    payload: Dict[str, Any],
    request: Request,
    settings: AppSettings = Depends(get_settings),
):
    data = settings.model_dump()
    for key, value in payload.items():
        if isinstance(value, dict) and isinstance(data.get(key), dict):
            data[key] = {**data[key], **value}
        else:
            data[key] = value
    if payload.get("tool_gateway_api_key") == "********":
        data["tool_gateway_api_key"] = settings.tool_gateway_api_key
    try:
        new_settings = AppSettings(**data)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    save_settings(new_settings, request.app.state.config_path)
    apply_settings(request.app.state, new_settings)
    return {"ok": True, "settings": new_settings.to_safe_dict()}


@router.post("/api/sessions/{session_id}/messages")
async def create_message(
    session_id: str,
    payload: MessageCreate,
    request: Request,
    response: Response,
    user_id: str = Depends(get_user_id),
    deduplicator: MessageDeduplicator = Depends(get_deduplicator),
):
    clock: Clock = request.app.state.clock
    created_at = payload.created_at or to_datetime(clock.now())
    message = ConversationMessage(
        id=payload.id or generate_message_id(payload.content, payload.role, session_id, clock),
        role=payload.role,
        content=payload.content,
        created_at=created_at,
        updated_at=created_at,
        message_type=payload.message_type,
        tools_used=payload.tools_used,
        ai_reasoning=payload.ai_reasoning,
        loop_iteration=payload.loop_iteration,
        metadata=payload.metadata,
    )
    result = await deduplicator.persist(message, session_id, user_id)
    if result.outcome is PersistOutcome.FAILED:
        raise HTTPException(status_code=503, detail=f"Message could not be saved: {result.error}")
    response.status_code = 201 if result.outcome is PersistOutcome.STORED else 200
    return {"outcome": result.outcome.value, "id": result.message_id}


@router.get("/api/sessions/{session_id}/messages")
async def list_messages(
    session_id: str,
    after: Optional[str] = None,
    limit: int = 500,
    user_id: str = Depends(get_user_id),
    db: Database = Depends(get_db),
):
    messages = await db.list_messages_since(session_id, user_id, after, min(max(limit, 1), 500))
    last = max((m.last_activity for m in messages), default=None)
    return {
        "messages": [m.model_dump(mode="json") for m in messages],
        "last_timestamp": iso_from_datetime(last) if last else after,
    }


@router.post("/api/plans", status_code=202)
async def submit_plan(
    payload: PlanCreate,
    request: Request,
    user_id: str = Depends(get_user_id),
    settings: AppSettings = Depends(get_settings),
    db: Database = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
):
    try:
        plan = build_plan(
            payload.title,
            payload.executions,
            description=payload.description,
            detect=settings.executor.detect_dependencies,
        )
    except PlanInvalid as exc:
        raise HTTPException(
            status_code=422,
            detail={"error": exc.message, "execution_ids": exc.execution_ids},
        )
    state = request.app.state
    run_id = new_run_id()
    conversation = None
    if payload.session_id:
        conversation = ConversationSync(
            db, session_id=payload.session_id, user_id=user_id, clock=state.clock, settings=settings
        )
        await conversation.load()
    executor = PlanExecutor(
        state.gateway,
        clock=state.clock,
        parallel_groups=settings.executor.parallel_groups,
        bus=bus,
        run_id=run_id,
    )
    stop_event = asyncio.Event()
    await db.create_run(run_id, plan.model_dump(mode="json"), payload.session_id)
    bus.register_run(run_id, payload.session_id)
    state.run_plans[run_id] = plan
    state.run_stop_events[run_id] = stop_event
    state.run_conversations[run_id] = conversation

    async def runner() -> None:
        outcome: Optional[RunOutcome] = None
        try:
            outcome = await run_plan(
                plan,
                executor=executor,
                conversation=conversation,
                bus=bus,
                run_id=run_id,
                stop_event=stop_event,
            )
        finally:
            state.run_stop_events.pop(run_id, None)
            state.run_tasks.pop(run_id, None)
            # Only the summary outlives the run; live state is released here.
            tools = []
            try:
                if conversation is not None:
                    await conversation.close()
                    tools = [t.model_dump(mode="json") for t in conversation.tracker.tools]
                await db.finalize_run(
                    run_id,
                    plan.model_dump(mode="json"),
                    outcome.status if outcome else "cancelled",
                    final_result=outcome.final_result if outcome else None,
                    error=outcome.error if outcome else "Run interrupted",
                    tools=tools,
                )
            finally:
                state.run_plans.pop(run_id, None)
                state.run_conversations.pop(run_id, None)

    state.run_tasks[run_id] = asyncio.create_task(runner())
    return {"run_id": run_id, "plan": plan.model_dump(mode="json")}


@router.get("/api/runs/{run_id}")
async def get_run(run_id: str, request: Request, db: Database = Depends(get_db)):
    plan = request.app.state.run_plans.get(run_id)
    if plan is not None:
        return _live_view(plan)
    summary = await db.get_run_summary(run_id)
    if summary is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return _summary_view(summary)


@router.get("/api/runs/{run_id}/tools")
async def get_run_tools(run_id: str, request: Request, db: Database = Depends(get_db)):
    state = request.app.state
    if run_id in state.run_plans:
        conversation = state.run_conversations.get(run_id)
        if conversation is None:
            return {"tools": [], "active": False}
        tracker = conversation.tracker
        return {"tools": [t.model_dump(mode="json") for t in tracker.tools], "active": tracker.is_active}
    summary = await db.get_run_summary(run_id)
    if summary is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return {"tools": summary["tools"], "active": False}


@router.post("/api/runs/{run_id}/stop")
async def stop_run(run_id: str, request: Request, db: Database = Depends(get_db)):
    stop_event = request.app.state.run_stop_events.get(run_id)
    if stop_event is not None:
        stop_event.set()
        return {"ok": True, "status": "stopping"}
    summary = await db.get_run_summary(run_id)
    if summary is None:
        raise HTTPException(status_code=404, detail="Run not found")
    return {"ok": True, "status": summary["status"]}


@router.get("/api/runs/{run_id}/events")
async def list_run_events(run_id: str, after_seq: int = 0, db: Database = Depends(get_db)):
    events = await db.list_events(run_id, after_seq=after_seq)
    if not events and after_seq == 0:
        raise HTTPException(status_code=404, detail="Run not found")
    last_seq = events[-1]["seq"] if events else after_seq
    return {"events": events, "last_seq": last_seq}


@router.get("/runs/{run_id}/events")
async def stream_events(
    run_id: str,
    db: Database = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
):
    # Preload past events then stream new ones until the run ends
    async def event_generator():
        queue = await bus.subscribe(run_id)
        last_seq = 0
        try:
            past = await db.list_events(run_id)
            for ev in past:
                last_seq = ev["seq"]
                yield sse_format(ev)
                if ev["event_type"] in TERMINAL_RUN_EVENTS:
                    return
            while True:
                ev = await queue.get()
                if ev["seq"] <= last_seq:
                    continue
                yield sse_format(ev)
                if ev["event_type"] in TERMINAL_RUN_EVENTS:
                    return
        except asyncio.CancelledError:
            pass
        finally:
            await bus.unsubscribe(run_id, queue)

    return StreamingResponse(event_generator(), media_type="text/event-stream")


def create_app(
    settings: Optional[AppSettings] = None,
    *,
    db: Optional[Database] = None,
    gateway: Optional[ToolGateway] = None,
    clock: Optional[Clock] = None,
    config_path: Optional[Path] = None,
) -> FastAPI:
    settings = settings or load_settings(config_path)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.db.init()
        try:
            yield
        finally:
            tasks = list(app.state.run_tasks.values())
            for task in tasks:
                task.cancel()
            if tasks:
                await asyncio.gather(*tasks, return_exceptions=True)
            for retired in app.state.retired_gateways:
                await retired.close()
            await app.state.gateway.close()

    app = FastAPI(title="Toolflow Orchestrator", lifespan=lifespan)
    app.state.settings = settings
    app.state.clock = clock or SystemClock()
    app.state.db = db or Database(settings.database_path)
    app.state.owns_gateway = gateway is None
    app.state.gateway = gateway or make_gateway(settings)
    app.state.retired_gateways = []
    app.state.bus = EventBus(app.state.db)
    app.state.deduplicator = make_deduplicator(app.state.db, app.state.clock, settings)
    app.state.run_plans = {}
    app.state.run_tasks = {}
    app.state.run_stop_events = {}
    app.state.run_conversations = {}
    app.state.config_path = config_path or CONFIG_PATH
    app.include_router(router)
    return app


if __name__ == "__main__":
    import os
    import uvicorn

    settings = load_settings()
    reload_enabled = os.getenv("TOOLFLOW_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "toolflow.main:create_app",
            factory=True,
            host=settings.host,
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
