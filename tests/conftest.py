from pathlib import Path
from types import SimpleNamespace

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from searchchat.config import AppSettings
from searchchat.db import Database
from searchchat.main import create_app
from tests.fakes import (
    FakeExaClient,
    FakeOpenRouterClient,
    FakeParallelClient,
    FakeTavilyClient,
    FakeWeatherClient,
)

FREE_MODEL = "Gemini 2.5 Flash"
PREMIUM_MODEL = "OpenAI 4.1"
GUEST_MODEL = "OpenAI 5 Mini"


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        openrouter_base_url="http://llm.test/v1",
        openrouter_api_key="or-test",
        tavily_api_key="tvly-test",
        parallel_api_key="par-test",
        exa_api_key="exa-test",
        openweather_api_key="ow-test",
        database_path=str(tmp_path / "test.db"),
        query_expansion_timeout_s=1.0,
        host="127.0.0.1",
        port=8000,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


def chat_body(text: str = "What is new in Python?", model: str = FREE_MODEL, **extra) -> dict:
    body = {"messages": [{"role": "user", "content": text}], "model": model}
    body.update(extra)
    return body


async def seed_user(db: Database, user_id: str, tier: str = "free", **credits: int) -> None:
    await db.init_user_tier(user_id, tier)
    for model_class, amount in credits.items():
        await db.set_credits(user_id, model_class, amount)


@pytest.fixture
async def db(tmp_path: Path) -> Database:
    database = Database(str(tmp_path / "unit.db"))
    await database.init()
    return database


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        fake_llm: FakeOpenRouterClient | None = None,
        fake_tavily: FakeTavilyClient | None = None,
        fake_parallel: FakeParallelClient | None = None,
        fake_exa: FakeExaClient | None = None,
        fake_weather: FakeWeatherClient | None = None,
        credit_store=None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        fakes = SimpleNamespace(
            llm=fake_llm or FakeOpenRouterClient(),
            tavily=fake_tavily or FakeTavilyClient(api_key=settings.tavily_api_key),
            parallel=fake_parallel or FakeParallelClient(api_key=settings.parallel_api_key),
            exa=fake_exa or FakeExaClient(),
            weather=fake_weather or FakeWeatherClient(),
        )
        app = create_app(
            settings,
            llm_client=fakes.llm,
            tavily_client=fakes.tavily,
            parallel_client=fakes.parallel,
            exa_client=fakes.exa,
            weather_client=fakes.weather,
            credit_store=credit_store,
        )
        return app, fakes

    return _factory


@pytest.fixture
async def client(app_factory):
    app, fakes = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.fakes = fakes  # type: ignore[attr-defined]
            yield http_client
