from pathlib import Path

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from eigen.config import AppSettings, RuntimeConfig, ToolSettings
from eigen.db import Database
from eigen.events import EventBus
from eigen.main import create_app
from eigen.state import RuntimeState
from eigen.tools import ToolExecutor
from tests.fakes import SERVER_URL, FakeLlamaServerClient


def make_settings(**overrides) -> AppSettings:
    settings = AppSettings(tools=ToolSettings(enabled_tools=["calculator"]))
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
def settings() -> AppSettings:
    return make_settings()


@pytest.fixture
def models_dir(tmp_path: Path) -> Path:
    path = tmp_path / "models"
    path.mkdir()
    return path


@pytest.fixture
def runtime(models_dir: Path, settings: AppSettings) -> RuntimeState:
    return RuntimeState(SERVER_URL, models_dir, settings)


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def recorded(bus: EventBus):
    events = []
    bus.add_listener(events.append)
    return events


@pytest.fixture
async def db(tmp_path: Path) -> Database:
    database = Database(str(tmp_path / "test.sqlite3"))
    await database.init()
    return database


@pytest.fixture
async def tool_executor():
    executor = ToolExecutor()
    try:
        yield executor
    finally:
        await executor.close()


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *, fake_llm: FakeLlamaServerClient | None = None, models_watch_interval_s: float = 0, **settings_overrides
    ):
        config = RuntimeConfig(
            data_dir=str(tmp_path / "data"),
            server_binary="llama-server-missing",
            server_host="llama.test",
            autostart_model=False,
            models_watch_interval_s=models_watch_interval_s,
        )
        llm = fake_llm or FakeLlamaServerClient()
        app = create_app(config, settings=make_settings(**settings_overrides), llm=llm)
        return app, config, llm

    return _factory


@pytest.fixture
async def client(app_factory):
    app, config, llm = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.config = config  # type: ignore[attr-defined]
            http_client.fake_llm = llm  # type: ignore[attr-defined]
            yield http_client
