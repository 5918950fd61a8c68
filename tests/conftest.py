import uuid
from datetime import datetime
from pathlib import Path
from typing import Optional

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from toolflow.clock import to_datetime
from toolflow.config import AppSettings, ExecutorConfig, PollingConfig
from toolflow.main import create_app
from toolflow.schemas import ConversationMessage
from tests.fakes import FakeToolGateway


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        database_path=str(tmp_path / "test.db"),
        tool_gateway_url="http://gateway.test/execute",
        tool_gateway_api_key=None,
        host="127.0.0.1",
        port=8000,
        polling=PollingConfig(interval_s=0.05, lookback_s=60.0),
        executor=ExecutorConfig(parallel_groups=False),
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


def make_message(
    content: str,
    *,
    role: str = "user",
    message_id: Optional[str] = None,
    at: Optional[float] = None,
    created_at: Optional[datetime] = None,
    message_type: Optional[str] = None,
) -> ConversationMessage:
    stamp = created_at or to_datetime(at if at is not None else 1_700_000_000.0)
    return ConversationMessage(
        id=message_id or f"{role}-{uuid.uuid4().hex[:8]}",
        role=role,
        content=content,
        created_at=stamp,
        updated_at=stamp,
        message_type=message_type,
    )


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        gateway: FakeToolGateway | None = None,
        config_path: Path | None = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        fake_gateway = gateway or FakeToolGateway()
        cfg_path = config_path or (tmp_path / "config.json")
        app = create_app(settings, gateway=fake_gateway, config_path=cfg_path)
        return app, cfg_path, fake_gateway

    return _factory


@pytest.fixture
async def client(app_factory):
    app, config_path, gateway = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(
            transport=transport, base_url="http://test", headers={"X-User-Id": "user-1"}
        ) as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.config_path = config_path  # type: ignore[attr-defined]
            http_client.gateway = gateway  # type: ignore[attr-defined]
            yield http_client
