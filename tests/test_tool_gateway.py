import json

import httpx
import pytest
import respx
from httpx import Response

from toolflow.tool_gateway import HttpToolGateway


GATEWAY_URL = "http://gateway.test/execute"


@pytest.mark.asyncio
async def test_execute_payload_and_headers():
    gateway = HttpToolGateway(GATEWAY_URL, "secret")
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                captured["headers"] = request.headers
                return Response(200, json={"status": "completed", "result": {"urls": ["http://a"]}})

            respx_mock.post(GATEWAY_URL).mock(side_effect=handler)
            resp = await gateway.execute("execute_web-search", {"query": "q"})
            assert resp.status == "completed"
            assert resp.result == {"urls": ["http://a"]}
            assert captured["json"] == {"tool": "execute_web-search", "parameters": {"query": "q"}}
            assert captured["headers"]["Authorization"] == "Bearer secret"
    finally:
        await gateway.close()


@pytest.mark.asyncio
async def test_http_error_becomes_failed_response():
    gateway = HttpToolGateway(GATEWAY_URL)
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            route = respx_mock.post(GATEWAY_URL).mock(return_value=Response(502, json={"error": "upstream down"}))
            resp = await gateway.execute("execute_web-scraper", {"url": "http://x"})
            assert resp.status == "failed"
            assert resp.error == "HTTP 502: upstream down"
            assert route.call_count == 1
    finally:
        await gateway.close()


@pytest.mark.asyncio
async def test_transport_errors_are_retried_then_reported():
    gateway = HttpToolGateway(GATEWAY_URL, max_retries=1)
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            route = respx_mock.post(GATEWAY_URL).mock(side_effect=httpx.ConnectError("refused"))
            resp = await gateway.execute("execute_web-search", {})
            assert resp.status == "failed"
            assert resp.error.startswith("Request failed:")
            assert route.call_count == 2
    finally:
        await gateway.close()


@pytest.mark.asyncio
async def test_retry_recovers_after_transport_error():
    gateway = HttpToolGateway(GATEWAY_URL, max_retries=1)
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(GATEWAY_URL).mock(
                side_effect=[httpx.ReadTimeout("slow"), Response(200, json={"status": "completed", "result": "ok"})]
            )
            resp = await gateway.execute("execute_web-search", {})
            assert resp.status == "completed"
            assert resp.result == "ok"
    finally:
        await gateway.close()


@pytest.mark.asyncio
async def test_malformed_payload_is_a_failure():
    gateway = HttpToolGateway(GATEWAY_URL)
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.post(GATEWAY_URL).mock(return_value=Response(200, json={"status": "maybe"}))
            resp = await gateway.execute("execute_web-search", {})
            assert resp.status == "failed"
            assert resp.error == "Malformed gateway response"
    finally:
        await gateway.close()
