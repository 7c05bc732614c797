"""
Pytest configuration and fixtures for DocRender Backend tests.

The browser engine, Redis and S3 are replaced with in-process stand-ins:
a fake Playwright-shaped engine, fakeredis, and the local blob store.
"""

import asyncio
import io
import os
import shutil
import tempfile
from datetime import timedelta
from pathlib import Path

import fakeredis
import pytest
import redis
from fastapi.testclient import TestClient
from pypdf import PdfReader, PdfWriter

# Set test environment variables before importing the app
_TEST_ROOT = tempfile.mkdtemp(prefix="docrender_test_")
os.environ["DOCRENDER_DB_PATH"] = str(Path(_TEST_ROOT) / "docrender.db")
os.environ["DOCRENDER_LOCAL_STORAGE"] = str(Path(_TEST_ROOT) / "blobs")
os.environ["DOCRENDER_STORAGE_BACKEND"] = "local"

from docrender_backend.blob_store import LocalBlobStore
from docrender_backend.configuration import load_settings
from docrender_backend.database import JobDatabase
from docrender_backend.job_manager import JobManager
from docrender_backend.main import app, get_job_manager
from docrender_backend.models import JobRecord, PageLayout, TextItem
from docrender_backend.reconciler import Reconciler
from docrender_backend.render_pool import RenderResourcePool
from docrender_backend.task_queue import TaskQueue
from docrender_backend.utils import utcnow


def make_pdf(*widths):
    """Build a PDF with one blank page per width (points)."""
    writer = PdfWriter()
    for width in widths or (595,):
        writer.add_blank_page(width=width, height=842)
    buffer = io.BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


def page_widths(data):
    return [round(float(page.mediabox.width)) for page in PdfReader(io.BytesIO(data)).pages]


def page_layout(index):
    """A one-item layout whose text carries the page index."""
    return PageLayout(items=[TextItem(text=str(index), x=10, y=10)])


# ----------------------------------------------------------------------
# Fake rendering engine
# ----------------------------------------------------------------------


class FakePage:
    def __init__(self, launcher):
        self.launcher = launcher
        self.html = None
        self.pdf_options = None

    async def set_content(self, html, wait_until=None, timeout=None):
        self.html = html
        self.launcher.pages.append(self)

    async def pdf(self, **options):
        self.pdf_options = options
        if self.launcher.export_delay:
            await asyncio.sleep(self.launcher.export_delay)
        return self.launcher.pdf_bytes


class FakeContext:
    def __init__(self, launcher, options):
        self.launcher = launcher
        self.options = options
        self.closed = False

    async def new_page(self):
        return FakePage(self.launcher)

    async def close(self):
        self.closed = True
        if self.launcher.close_error:
            raise RuntimeError("context already gone")


class FakeEngine:
    def __init__(self, launcher):
        self.launcher = launcher
        self.connected = True
        self.handlers = {}
        self.contexts = []

    def is_connected(self):
        return self.connected

    def on(self, event, handler):
        self.handlers.setdefault(event, []).append(handler)

    def disconnect(self):
        self.connected = False
        for handler in self.handlers.get("disconnected", []):
            handler(self)

    async def close(self):
        self.connected = False

    async def new_context(self, **options):
        if self.launcher.context_failures > 0:
            self.launcher.context_failures -= 1
            raise RuntimeError("Target page, context or browser has been closed")
        context = FakeContext(self.launcher, options)
        self.contexts.append(context)
        return context


class FakeLauncher:
    """Launcher double; knobs control delays and injected failures."""

    def __init__(self, pdf_bytes=None):
        self.pdf_bytes = make_pdf() if pdf_bytes is None else pdf_bytes
        self.launch_delay = 0
        self.launch_error = None
        self.export_delay = 0
        self.context_failures = 0
        self.close_error = False
        self.engines = []
        self.pages = []
        self.shut_down = False

    async def launch(self):
        if self.launch_delay:
            await asyncio.sleep(self.launch_delay)
        if self.launch_error is not None:
            error, self.launch_error = self.launch_error, None
            raise error
        engine = FakeEngine(self)
        self.engines.append(engine)
        return engine

    async def shutdown(self):
        self.shut_down = True


class FakeRenderer:
    """Page renderer double: page N renders to a PDF whose page is 100+N points wide."""

    def __init__(self, error=None):
        self.error = error
        self.calls = []

    async def render(self, layout):
        self.calls.append(layout)
        await asyncio.sleep(0)
        if self.error is not None:
            raise self.error
        return make_pdf(100 + int(layout.items[0].text))


class FailingPipeline:
    """Pipeline whose reads go through but whose EXEC never reaches Redis."""

    def __init__(self, pipe):
        self._pipe = pipe

    def __getattr__(self, name):
        return getattr(self._pipe, name)

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self._pipe.reset()

    def execute(self, *args, **kwargs):
        raise redis.ConnectionError("Connection lost during EXEC")


class RedisOutage:
    """Makes every transaction on a client fail between start() and end()."""

    def __init__(self, client, monkeypatch):
        self.client = client
        self.monkeypatch = monkeypatch
        self._pipeline = client.pipeline

    def start(self):
        real = self._pipeline
        self.monkeypatch.setattr(self.client, "pipeline", lambda *args, **kwargs: FailingPipeline(real(*args, **kwargs)))

    def end(self):
        self.monkeypatch.setattr(self.client, "pipeline", self._pipeline)


# ----------------------------------------------------------------------
# Fixtures
# ----------------------------------------------------------------------


@pytest.fixture(scope="session", autouse=True)
def test_dirs():
    """Remove the session temp root after all tests."""
    yield _TEST_ROOT
    shutil.rmtree(_TEST_ROOT, ignore_errors=True)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def settings(tmp_path):
    return load_settings({
        "database": {"path": str(tmp_path / "docrender.db")},
        "storage": {"backend": "local", "local_root": str(tmp_path / "blobs")},
        "redis": {"key_prefix": "test"},
    })


@pytest.fixture
def database(settings):
    return JobDatabase(Path(settings.database.path))


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def queue(redis_client):
    return TaskQueue(redis_client, key_prefix="test")


@pytest.fixture
def redis_outage(queue, monkeypatch):
    return RedisOutage(queue.client, monkeypatch)


@pytest.fixture
def blob_store(settings):
    return LocalBlobStore(Path(settings.storage.local_root))


@pytest.fixture
def launcher():
    return FakeLauncher()


@pytest.fixture
def pool(launcher):
    return RenderResourcePool(launcher=launcher)


@pytest.fixture
def fake_renderer():
    return FakeRenderer()


@pytest.fixture
def job_factory(database):
    """Persist jobs with one stored layout per page."""

    def create(total_pages=3, user_id="user-1", assigned_quota=5, email="owner@example.com", layouts=None):
        now = utcnow()
        job = JobRecord(
            id=f"job-{os.urandom(4).hex()}",
            user_id=user_id,
            email=email,
            created_by=user_id,
            assigned_quota=assigned_quota,
            total_pages=total_pages,
            layout_pages=layouts if layouts is not None else [page_layout(i) for i in range(total_pages)],
            created_at=now,
            updated_at=now,
        )
        database.create_job(job)
        return database.get_job(job.id)

    return create


@pytest.fixture
def later():
    """Clock five minutes ahead, so every job reads as stale."""
    return lambda: utcnow() + timedelta(minutes=5)


@pytest.fixture
def job_manager(database, queue, blob_store, settings, later):
    reconciler = Reconciler.from_settings(database, queue, settings)
    reconciler.clock = later
    return JobManager(database, queue, reconciler, blob_store, settings)


@pytest.fixture
def client(job_manager):
    """Create a test client for the FastAPI app wired to the test job manager."""
    app.dependency_overrides[get_job_manager] = lambda: job_manager
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def pdf_tools():
    """Helpers for building and inspecting PDFs in tests."""
    return {"make": make_pdf, "widths": page_widths, "layout": page_layout}
