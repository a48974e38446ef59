from pathlib import Path

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from harvey.config import AppSettings
from harvey.db import Database
from harvey.file_store import FileStore
from harvey.main import create_app
from harvey.session_store import SessionStore
from harvey.tools import ToolDispatcher
from tests.fakes import FakeAnalysisClient, FakeModelClient, FakeTransformationClient


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        model_base_url="http://model.test/v1",
        model_id="test-model",
        model_api_key="test-key",
        pricing_analysis_api_base_url="http://analysis.test",
        transformation_api_base_url="http://transform.test",
        database_path=str(tmp_path / "test.db"),
        upload_dir=str(tmp_path / "uploads"),
        reaper_enabled=False,
        host="127.0.0.1",
        port=3001,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
async def file_store(tmp_path: Path) -> FileStore:
    db = Database(str(tmp_path / "files.db"))
    await db.init()
    return FileStore(db, tmp_path / "uploads")


@pytest.fixture
def store(file_store: FileStore) -> SessionStore:
    return SessionStore(file_store)


@pytest.fixture
def fake_analysis() -> FakeAnalysisClient:
    return FakeAnalysisClient()


@pytest.fixture
def fake_transformation() -> FakeTransformationClient:
    return FakeTransformationClient()


@pytest.fixture
def dispatcher(store, file_store, fake_analysis, fake_transformation) -> ToolDispatcher:
    return ToolDispatcher(store, file_store, fake_analysis, fake_transformation)


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        fake_model: FakeModelClient | None = None,
        fake_analysis: FakeAnalysisClient | None = None,
        fake_transformation: FakeTransformationClient | None = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        model = fake_model or FakeModelClient()
        analysis = fake_analysis or FakeAnalysisClient()
        transformation = fake_transformation or FakeTransformationClient()
        app = create_app(
            settings,
            model_client=model,
            analysis_client=analysis,
            transformation_client=transformation,
        )
        return app, model, analysis, transformation

    return _factory


@pytest.fixture
async def client(app_factory):
    app, model, analysis, transformation = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.fake_model = model  # type: ignore[attr-defined]
            http_client.fake_analysis = analysis  # type: ignore[attr-defined]
            http_client.fake_transformation = transformation  # type: ignore[attr-defined]
            yield http_client
