"""Shared test fixtures for the help desk backend tests."""

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from helpdesk.config import settings
from helpdesk.database import Base, get_session, load_models
from helpdesk.errors import register_error_handlers
from helpdesk.workers.mail_dispatcher import dispatcher

from helpdesk.api.admin import router as admin_router
from helpdesk.api.attachments import router as attachments_router
from helpdesk.api.auth import router as auth_router
from helpdesk.api.categories import router as categories_router
from helpdesk.api.comments import router as comments_router
from helpdesk.api.notifications import router as notifications_router
from helpdesk.api.organizations import router as organizations_router
from helpdesk.api.reports import router as reports_router
from helpdesk.api.statuses import router as statuses_router
from helpdesk.api.tickets import router as tickets_router
from helpdesk.api.time_entries import router as time_entries_router

ALL_ROUTERS = (
    auth_router,
    organizations_router,
    tickets_router,
    comments_router,
    attachments_router,
    time_entries_router,
    categories_router,
    statuses_router,
    notifications_router,
    reports_router,
    admin_router,
)


@pytest_asyncio.fixture
async def db_session():
    """Create a fresh in-memory database per test."""
    load_models()
    engine = create_async_engine("sqlite+aiosqlite://", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with session_factory() as session:
        yield session

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


class MailRecorder:
    """Stands in for the dispatcher's enqueue and remembers every message."""

    def __init__(self):
        self.messages = []

    def __call__(self, kind, recipient, variables, lang="en"):
        if not recipient:
            return False
        self.messages.append({"kind": kind, "recipient": recipient, "variables": variables, "lang": lang})
        return True

    def of_kind(self, kind):
        return [m for m in self.messages if m["kind"] == kind]


@pytest.fixture
def sent_mail(monkeypatch):
    recorder = MailRecorder()
    monkeypatch.setattr(dispatcher, "enqueue", recorder)
    return recorder


@pytest.fixture
def app(db_session, sent_mail):
    app = FastAPI()

    async def _session_override():
        yield db_session

    app.dependency_overrides[get_session] = _session_override
    for router in ALL_ROUTERS:
        app.include_router(router)
    register_error_handlers(app)
    return app


@pytest_asyncio.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.fixture
def upload_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(settings, "upload_dir", str(tmp_path / "uploads"))
    return tmp_path / "uploads"
