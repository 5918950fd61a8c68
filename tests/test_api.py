import asyncio

import pytest

from toolflow.schemas import GatewayResponse


async def wait_for_run(client, run_id):
    task = client.app.state.run_tasks.get(run_id)
    if task is not None:
        await asyncio.wait_for(task, timeout=5)
    res = await client.get(f"/api/runs/{run_id}")
    assert res.status_code == 200
    return res.json()


@pytest.mark.asyncio
async def test_message_persist_and_duplicate(client):
    first = await client.post("/api/sessions/s1/messages", json={"role": "user", "content": "hello"})
    assert first.status_code == 201
    assert first.json()["outcome"] == "stored"

    again = await client.post("/api/sessions/s1/messages", json={"role": "user", "content": "hello"})
    assert again.status_code == 200
    assert again.json() == {"outcome": "duplicate", "id": first.json()["id"]}

    listing = await client.get("/api/sessions/s1/messages")
    assert [m["content"] for m in listing.json()["messages"]] == ["hello"]


@pytest.mark.asyncio
async def test_identity_header_is_required(client):
    res = await client.post(
        "/api/sessions/s1/messages",
        json={"role": "user", "content": "hello"},
        headers={"X-User-Id": ""},
    )
    assert res.status_code == 401


@pytest.mark.asyncio
async def test_message_listing_honours_after_cursor(client):
    await client.post(
        "/api/sessions/s1/messages",
        json={"role": "user", "content": "first", "created_at": "2024-01-01T00:00:00Z"},
    )
    await client.post(
        "/api/sessions/s1/messages",
        json={"role": "assistant", "content": "second", "created_at": "2024-01-01T00:00:05Z"},
    )
    res = await client.get("/api/sessions/s1/messages", params={"after": "2024-01-01T00:00:01.000000Z"})
    body = res.json()
    assert [m["content"] for m in body["messages"]] == ["second"]
    assert body["last_timestamp"] == "2024-01-01T00:00:05.000000Z"


@pytest.mark.asyncio
async def test_store_outage_maps_to_503(client, monkeypatch):
    async def broken(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(client.app.state.db, "insert_message", broken)
    res = await client.post("/api/sessions/s1/messages", json={"role": "user", "content": "hello"})
    assert res.status_code == 503
    assert "disk full" in res.json()["detail"]


@pytest.mark.asyncio
async def test_invalid_plan_is_rejected(client):
    res = await client.post(
        "/api/plans",
        json={
            "title": "Broken",
            "executions": [
                {"id": "a", "tool": "execute_web-search"},
                {"id": "b", "tool": "execute_summarize", "dependencies": [{"tool_id": "ghost"}]},
            ],
        },
    )
    assert res.status_code == 422
    assert res.json()["detail"]["execution_ids"] == ["b"]


@pytest.mark.asyncio
async def test_plan_run_writes_transcript(client):
    await client.post("/api/sessions/s1/messages", json={"role": "user", "content": "look this up"})
    res = await client.post(
        "/api/plans",
        json={"title": "Lookup", "session_id": "s1", "executions": [{"tool": "execute_web-search", "parameters": {"query": "q"}}]},
    )
    assert res.status_code == 202
    run_id = res.json()["run_id"]

    run = await wait_for_run(client, run_id)
    assert run["status"] == "completed"
    assert run["outcome"]["final_result"] == "execute_web-search ok"
    assert client.gateway.calls == [("execute_web-search", {"query": "q"})]

    listing = await client.get("/api/sessions/s1/messages")
    kinds = [(m["role"], m["message_type"]) for m in listing.json()["messages"]]
    assert kinds == [
        ("user", None),
        ("assistant", "tool-executing"),
        ("assistant", "tool-executing"),
        ("assistant", "response"),
    ]

    tools = await client.get(f"/api/runs/{run_id}/tools")
    assert [t["status"] for t in tools.json()["tools"]] == ["completed"]

    events = await client.get(f"/api/runs/{run_id}/events")
    assert events.json()["events"][-1]["event_type"] == "run_completed"


@pytest.mark.asyncio
async def test_failed_plan_run_reports_step(client):
    client.gateway.responses["execute_web-scraper"] = GatewayResponse(status="failed", error="timeout")
    res = await client.post(
        "/api/plans",
        json={
            "title": "Scrape",
            "executions": [{"tool": "execute_web-scraper", "description": "Scrape page", "parameters": {"url": "http://x"}}],
        },
    )
    run = await wait_for_run(client, res.json()["run_id"])
    assert run["status"] == "failed"
    assert run["outcome"]["error"] == 'Step "Scrape page" failed: timeout'
    assert run["plan"]["executions"][0]["status"] == "failed"


@pytest.mark.asyncio
async def test_unknown_run_is_404(client):
    assert (await client.get("/api/runs/nope")).status_code == 404
    assert (await client.post("/api/runs/nope/stop")).status_code == 404
    assert (await client.get("/api/runs/nope/events")).status_code == 404


@pytest.mark.asyncio
async def test_finished_run_keeps_only_its_summary(client):
    await client.post("/api/sessions/s1/messages", json={"role": "user", "content": "find it"})
    res = await client.post(
        "/api/plans",
        json={"title": "Find", "session_id": "s1", "executions": [{"tool": "execute_web-search", "parameters": {"query": "q"}}]},
    )
    run_id = res.json()["run_id"]
    run = await wait_for_run(client, run_id)

    state = client.app.state
    assert run_id not in state.run_conversations
    assert run_id not in state.run_plans
    assert run_id not in state.run_stop_events
    assert run["outcome"]["status"] == "completed"
    assert run["plan"]["status"] == "completed"

    stop = await client.post(f"/api/runs/{run_id}/stop")
    assert stop.json() == {"ok": True, "status": "completed"}
    tools = await client.get(f"/api/runs/{run_id}/tools")
    assert tools.json()["active"] is False
