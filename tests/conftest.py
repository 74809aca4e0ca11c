from pathlib import Path

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from workchat.config import AppSettings
from workchat.db import Database
from workchat.main import create_app
from tests.fakes import FakeResponsesClient, FakeTicketingClient


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        openai_base_url="http://model.test/v1",
        openai_api_key="test-key",
        model_small="small-model",
        model_medium="medium-model",
        model_large="large-model",
        fast_path_model="fast-model",
        database_path=str(tmp_path / "test.db"),
        media_dir=str(tmp_path / "media"),
        media_base_url="/media",
        host="127.0.0.1",
        port=8000,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
async def db(tmp_path: Path):
    database = Database(str(tmp_path / "unit.db"))
    await database.init()
    return database


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        fake_llm: FakeResponsesClient | None = None,
        fake_ticketing: FakeTicketingClient | None = None,
        config_path: Path | None = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        llm_client = fake_llm or FakeResponsesClient()
        ticketing_client = fake_ticketing or FakeTicketingClient()
        cfg_path = config_path or (tmp_path / "config.json")
        app = create_app(settings, llm_client=llm_client, ticketing_client=ticketing_client, config_path=cfg_path)
        return app, cfg_path, llm_client, ticketing_client

    return _factory


@pytest.fixture
async def client(app_factory):
    app, config_path, llm_client, ticketing_client = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.config_path = config_path  # type: ignore[attr-defined]
            http_client.fake_llm = llm_client  # type: ignore[attr-defined]
            http_client.fake_ticketing = ticketing_client  # type: ignore[attr-defined]
            yield http_client
