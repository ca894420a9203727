"""Pytest configuration and fixtures."""

import os

# Settings are read once at import time, so the test environment has to be in
# place before anything from scriptflow is imported.
os.environ["APP_ENV"] = "test"
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///./test.db"
os.environ["REDIS_URL"] = "redis://127.0.0.1:1/0"
os.environ["CELERY_BROKER_URL"] = "memory://"
os.environ["CELERY_RESULT_BACKEND"] = "cache+memory://"
os.environ["RATE_LIMIT_STORAGE_URI"] = "memory://"
os.environ["API_SECRET_KEY"] = "test-api-key"
os.environ["SECRET_KEY"] = "test-admin-key"
os.environ["GEMINI_API_KEY"] = ""
os.environ["MANYCHAT_API_KEY"] = ""
os.environ["PUBLIC_BASE_URL"] = "https://scripts.test"

from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from scriptflow.api.scripts import get_job_enqueuer
from scriptflow.config import get_settings
from scriptflow.db import models  # noqa: F401
from scriptflow.db.session import Base, get_db
from scriptflow.main import app
from scriptflow.schemas.schemas import ScriptHints, ScriptJobPayload
from scriptflow.services.analyzer import AnalysisBackend, ReelAnalyzer
from scriptflow.services.fingerprint import (
    compute_fingerprint,
    normalize_source_reference,
    source_cache_key,
)
from scriptflow.services.job_service import job_service
from scriptflow.services.media import DownloadedMedia, ExtractionResult
from scriptflow.services.notifier import DeliveryReport
from scriptflow.services.pipeline import ScriptPipeline

API_HEADERS = {"X-API-Key": "test-api-key"}
ADMIN_HEADERS = {"X-Admin-Key": "test-admin-key"}

DEFAULT_ANALYSIS = {
    "transcript": "Stop scrolling. Here is the one trick nobody tells you.",
    "visualCues": ["fast zoom on face", "bold captions"],
    "hookType": "Stop scrolling",
    "tone": "High Energy",
    "sceneDescriptions": ["talking head", "close-up of result"],
}

GENERATED_SCRIPT = "[HOOK]\n(zoom) You are doing it wrong.\n\n[BODY]\nDo this instead.\n\n[CTA]\nFollow for more."


# ============== Database ==============


@pytest_asyncio.fixture
async def test_engine(tmp_path: Path):
    """Fresh SQLite database per test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_maker(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with session_maker() as session:
        yield session
        await session.rollback()


# ============== HTTP ==============


@pytest.fixture
def enqueued() -> list[dict]:
    """Work items the API handed to the queue."""
    return []


@pytest_asyncio.fixture
async def client(session_maker, enqueued) -> AsyncGenerator[AsyncClient, None]:
    """Create a test HTTP client."""

    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_job_enqueuer] = lambda: enqueued.append

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


# ============== Pipeline fakes ==============


class FakeDownloader:
    def __init__(self):
        self.calls = 0
        self.error: Optional[Exception] = None
        self.duration = 30.0

    async def download(self, url: str, work_dir: Path) -> DownloadedMedia:
        self.calls += 1
        if self.error is not None:
            raise self.error
        path = work_dir / "source.mp4"
        path.write_bytes(b"fake-video")
        return DownloadedMedia(path=path, duration=self.duration)


class FakeExtractor:
    def __init__(self):
        self.with_audio = True
        self.with_frames = True

    async def extract(self, video_path: Path, work_dir: Path, mode: str, duration=None) -> ExtractionResult:
        result = ExtractionResult()
        if self.with_audio:
            result.audio_path = work_dir / "audio.wav"
        if self.with_frames:
            result.frame_paths = [work_dir / "frames" / "frame_01.jpg"]
        return result


class FakeAnalysisBackend(AnalysisBackend):
    name = "fake"

    def __init__(self, payload: Optional[dict] = None):
        self.payload = dict(payload or DEFAULT_ANALYSIS)
        self.calls = 0
        self.error: Optional[Exception] = None
        self.seen: list[ExtractionResult] = []

    async def analyze(self, media: ExtractionResult) -> dict:
        self.calls += 1
        self.seen.append(media)
        if self.error is not None:
            raise self.error
        return self.payload


class FakeGenerator:
    model_name = "fake-model"

    def __init__(self):
        self.calls: list[dict] = []
        self.errors: list[Exception] = []
        self.text = GENERATED_SCRIPT

    async def generate(self, idea, analysis, style_examples=None, hints=None) -> str:
        self.calls.append(
            {"idea": idea, "analysis": analysis, "style_examples": style_examples, "hints": hints}
        )
        if self.errors:
            raise self.errors.pop(0)
        return self.text


class FakeRenderer:
    def __init__(self):
        self.error: Optional[Exception] = None
        self.rendered: list[str] = []
        self.refs = 0

    def acquire(self):
        self.refs += 1
        return self

    def release(self):
        self.refs -= 1

    async def render(self, text: str, title: str = "", timeout=None) -> bytes:
        if self.error is not None:
            raise self.error
        self.rendered.append(text)
        return b"\x89PNG fake"


class FakeStorage:
    def __init__(self):
        self.uploads: list[str] = []

    async def upload_image(self, content: bytes, fingerprint: str, timeout=None) -> str:
        self.uploads.append(fingerprint)
        return f"https://cdn.test/{fingerprint}.png"


class FakeNotifier:
    def __init__(self):
        self.deliveries: list[dict] = []
        self.error: Optional[Exception] = None

    async def deliver(self, subscriber_id, script_url, image_url=None, script_text=None) -> DeliveryReport:
        self.deliveries.append(
            {
                "subscriber_id": subscriber_id,
                "script_url": script_url,
                "image_url": image_url,
                "script_text": script_text,
            }
        )
        if self.error is not None:
            raise self.error
        return DeliveryReport(calls={"fake": True})


@dataclass
class PipelineKit:
    pipeline: ScriptPipeline
    session_maker: async_sessionmaker
    downloader: FakeDownloader = field(default_factory=FakeDownloader)
    extractor: FakeExtractor = field(default_factory=FakeExtractor)
    backend: FakeAnalysisBackend = field(default_factory=FakeAnalysisBackend)
    generator: FakeGenerator = field(default_factory=FakeGenerator)
    renderer: FakeRenderer = field(default_factory=FakeRenderer)
    storage: FakeStorage = field(default_factory=FakeStorage)
    notifier: FakeNotifier = field(default_factory=FakeNotifier)

    async def queue_job(
        self,
        identity: str = "u1",
        url: str = "https://x/reel/abc",
        idea: str = "cooking tip",
        **hints,
    ) -> dict:
        """Create a queued job the way the intake gate does and return its work item."""
        normalized = normalize_source_reference(url)
        hint_values = ScriptHints(**hints)
        hint_dict = hint_values.model_dump()
        fingerprint = compute_fingerprint(identity, normalized, idea, hint_dict)

        async with self.session_maker() as db:
            job = await job_service.create_job(
                db,
                fingerprint=fingerprint,
                identity=identity,
                source_reference=url,
                normalized_source=normalized,
                idea=idea,
                hints=hint_dict,
            )
            await db.commit()

        return ScriptJobPayload(
            job_id=job.id,
            fingerprint=fingerprint,
            identity=identity,
            source_reference=url,
            normalized_source=normalized,
            source_key=source_cache_key(normalized),
            idea=idea,
            hints=hint_values,
        ).model_dump()

    async def claim_lost(self, payload: dict):
        """Claim the job the way a worker does, then never finish, like a killed worker."""
        async with self.session_maker() as db:
            await job_service.mark_processing(db, payload["job_id"])
            await db.commit()


@pytest.fixture
def kit(session_maker, tmp_path, monkeypatch) -> PipelineKit:
    """Pipeline wired to the test database and in-process fakes."""
    monkeypatch.setattr(get_settings(), "temp_dir", str(tmp_path / "work"))

    downloader = FakeDownloader()
    extractor = FakeExtractor()
    backend = FakeAnalysisBackend()
    generator = FakeGenerator()
    renderer = FakeRenderer()
    storage = FakeStorage()
    notifier = FakeNotifier()

    pipeline = ScriptPipeline(
        session_maker,
        downloader=downloader,
        extractor=extractor,
        analyzer=ReelAnalyzer([backend], timeout=5, rate_limit_pause=0),
        generator=generator,
        renderer=renderer,
        storage=storage,
        notifier=notifier,
        max_attempts=3,
        analysis_mode="hybrid",
    )
    return PipelineKit(
        pipeline=pipeline,
        session_maker=session_maker,
        downloader=downloader,
        extractor=extractor,
        backend=backend,
        generator=generator,
        renderer=renderer,
        storage=storage,
        notifier=notifier,
    )
