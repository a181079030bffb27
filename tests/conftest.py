from pathlib import Path
from types import SimpleNamespace

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from ella.config import AppSettings
from ella.generator import ResponseGenerator
from ella.jobs import JobQueue, JobStore
from ella.main import create_app
from ella.steps import StepStore
from tests.fakes import CountingDatabase, FakeGeminiClient, FakeImageClient, FakeTavilyClient


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        google_api_key="test-google",
        tavily_api_key="test-tavily",
        nebius_api_key="test-nebius",
        database_path=str(tmp_path / "test.db"),
        host="127.0.0.1",
        port=8000,
        job_max_attempts=3,
        job_retry_backoff_s=0.0,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        fake_gemini: FakeGeminiClient | None = None,
        fake_tavily: FakeTavilyClient | None = None,
        fake_images: FakeImageClient | None = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        gemini = fake_gemini or FakeGeminiClient()
        tavily = fake_tavily or FakeTavilyClient()
        images = fake_images or FakeImageClient()
        db = CountingDatabase(settings.database_path)
        app = create_app(
            settings,
            db=db,
            gemini=gemini,
            tavily_client=tavily,
            image_client=images,
        )
        return app, SimpleNamespace(gemini=gemini, tavily=tavily, images=images, db=db)

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


@pytest.fixture
async def runtime(tmp_path: Path):
    """Database, queue and generator wired with fakes, without the HTTP layer."""
    settings = make_settings(tmp_path)
    db = CountingDatabase(settings.database_path)
    await db.init()
    gemini = FakeGeminiClient()
    tavily = FakeTavilyClient()
    images = FakeImageClient()
    queue = JobQueue(JobStore(db.path), StepStore(db.path), max_attempts=3, retry_backoff_s=0.0)
    generator = ResponseGenerator(db, gemini, tavily, images, settings)
    queue.register(generator.as_job_function())
    rt = SimpleNamespace(
        settings=settings,
        db=db,
        gemini=gemini,
        tavily=tavily,
        images=images,
        queue=queue,
        generator=generator,
    )
    try:
        yield rt
    finally:
        await queue.close()
