from pathlib import Path

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from gateway.config import AppSettings
from gateway.main import create_app
from tests.fakes import FakeTavilyClient, make_fake_providers


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        gemini_api_key="gemini-key",
        openai_api_key="openai-key",
        anthropic_api_key="anthropic-key",
        gemini_base_url="https://gemini.test/v1beta",
        openai_base_url="https://openai.test/v1",
        anthropic_base_url="https://anthropic.test/v1",
        tavily_api_key=None,
        default_system_prompt="Global prompt.",
        database_path=str(tmp_path / "test.db"),
        upload_dir=str(tmp_path / "uploads"),
        host="127.0.0.1",
        port=8000,
        list_models_retry_delay_s=0,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        providers: dict | None = None,
        fake_tavily: FakeTavilyClient | None = None,
        config_path: Path | None = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        adapters = providers or make_fake_providers()
        tavily_client = fake_tavily or FakeTavilyClient(api_key=settings.tavily_api_key)
        cfg_path = config_path or (tmp_path / "config.json")
        app = create_app(settings, adapters=adapters, tavily_client=tavily_client, config_path=cfg_path)
        return app, cfg_path, adapters, tavily_client

    return _factory


@pytest.fixture
async def client(app_factory):
    app, config_path, adapters, tavily_client = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.config_path = config_path  # type: ignore[attr-defined]
            http_client.providers = adapters  # type: ignore[attr-defined]
            http_client.fake_tavily = tavily_client  # type: ignore[attr-defined]
            yield http_client
