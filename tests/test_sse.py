import asyncio
import json

import pytest
from asgi_lifespan import LifespanManager

from toolflow.main import stream_events


def decode(chunk):
    line = chunk.decode("utf-8") if isinstance(chunk, (bytes, bytearray)) else chunk
    return json.loads(line.replace("data:", "").strip())


@pytest.mark.asyncio
async def test_run_sse_stream_returns_past_events(app_factory):
    app, _, _ = app_factory()
    async with LifespanManager(app):
        db = app.state.db
        bus = app.state.bus
        await bus.emit("run-sse", "run_started", {"plan_id": "p1"})
        response = await stream_events("run-sse", db=db, bus=bus)
        chunk = await asyncio.wait_for(response.body_iterator.__anext__(), timeout=1)
        payload = decode(chunk)
        assert payload["event_type"] == "run_started"
        assert payload["payload"]["run_id"] == "run-sse"
        await response.body_iterator.aclose()


@pytest.mark.asyncio
async def test_run_sse_stream_follows_live_events_until_run_ends(app_factory):
    app, _, _ = app_factory()
    async with LifespanManager(app):
        db = app.state.db
        bus = app.state.bus
        await bus.emit("run-live", "run_started", {})
        response = await stream_events("run-live", db=db, bus=bus)

        async def emit_events():
            await asyncio.sleep(0.01)
            await bus.emit("run-live", "step_update", {"status": "executing"})
            await bus.emit("run-live", "run_completed", {"status": "completed"})

        task = asyncio.create_task(emit_events())
        kinds = []
        async for chunk in response.body_iterator:
            kinds.append(decode(chunk)["event_type"])
        await task
        assert kinds == ["run_started", "step_update", "run_completed"]
        assert "run-live" not in bus.run_ids
