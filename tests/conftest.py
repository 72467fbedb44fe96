from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from agentstream.config import AppSettings, EndpointConfig
from agentstream.db import Database
from agentstream.deadline import DeadlineLimits, DeadlineMonitor
from agentstream.ledger import CreditLedger
from agentstream.main import create_app
from agentstream.session import Session
from tests.fakes import FakeClock, FakeGatewayClient

PRIMARY_MODEL = "anthropic/claude-sonnet-4.5"
FALLBACK_MODEL = "xai/grok-code-fast-1"
FALLBACK_PROVIDER_MODEL = "grok-fallback"


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        gateway_endpoint=EndpointConfig(base_url="http://gateway.test/v1", api_key="gateway-key"),
        fallback_endpoint=EndpointConfig(
            base_url="http://fallback.test/v1",
            api_key="fallback-key",
            model_id=FALLBACK_PROVIDER_MODEL,
        ),
        fallback_model_id=FALLBACK_MODEL,
        default_model=PRIMARY_MODEL,
        database_path=str(tmp_path / "test.db"),
        host="127.0.0.1",
        port=8000,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


def make_session(
    messages: Optional[List[Dict[str, Any]]] = None,
    *,
    clock: Optional[FakeClock] = None,
    limits: Optional[DeadlineLimits] = None,
    model: str = PRIMARY_MODEL,
    max_steps: int = 10,
    **kwargs,
) -> Session:
    clock = clock or FakeClock()
    return Session(
        request_id=kwargs.pop("request_id", "req-1"),
        user_id=kwargs.pop("user_id", "user-1"),
        model=model,
        messages=messages or [{"role": "user", "content": "build a todo app"}],
        monitor=DeadlineMonitor(limits, clock),
        max_steps=max_steps,
        **kwargs,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def ledger(tmp_path: Path) -> CreditLedger:
    db = Database(str(tmp_path / "ledger.db"))
    await db.init()
    return CreditLedger(db)


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        fake_gateway: FakeGatewayClient | None = None,
        clock: FakeClock | None = None,
        limits: DeadlineLimits | None = None,
        config_path: Path | None = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        clock = clock or FakeClock()
        gateway = fake_gateway or FakeGatewayClient(clock=clock)
        cfg_path = config_path or (tmp_path / "config.json")
        app = create_app(settings, gateway_client=gateway, limits=limits, clock=clock, config_path=cfg_path)
        return app, cfg_path, gateway

    return _factory


@pytest.fixture
async def client(app_factory):
    app, config_path, gateway = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.config_path = config_path  # type: ignore[attr-defined]
            http_client.fake_gateway = gateway  # type: ignore[attr-defined]
            yield http_client
