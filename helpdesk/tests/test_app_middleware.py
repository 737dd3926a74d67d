"""Application wiring: request ids, security headers, route metrics and engine options."""

import json
import logging

import pytest
from httpx import ASGITransport, AsyncClient

from helpdesk import main
from helpdesk.database import engine_options
from helpdesk.logging_config import JSONFormatter, RequestContextFilter, bind_request, unbind_request
from helpdesk.observability.metrics import InMemoryMetrics


@pytest.fixture
def fresh_metrics(monkeypatch):
    local = InMemoryMetrics()
    monkeypatch.setattr(main, "metrics", local)
    return local


@pytest.mark.asyncio
async def test_request_id_and_security_headers(fresh_metrics):
    async with AsyncClient(transport=ASGITransport(app=main.app), base_url="http://test") as client:
        r = await client.get("/api/health/live", headers={"X-Request-ID": "req-123"})

    assert r.status_code == 200
    assert r.json() == {"status": "alive", "service": "helpdesk"}
    assert r.headers["X-Request-ID"] == "req-123"
    assert r.headers["X-Content-Type-Options"] == "nosniff"
    assert r.headers["X-Frame-Options"] == "DENY"


@pytest.mark.asyncio
async def test_metrics_are_keyed_by_route_template(fresh_metrics):
    async with AsyncClient(transport=ASGITransport(app=main.app), base_url="http://test") as client:
        await client.get("/api/tickets/abc")
        await client.get("/api/tickets/def")
        await client.get("/definitely/not/a/route")
        r = await client.get("/api/metrics")

    routes = r.json()["metrics"]["route_counts"]
    assert routes["/api/tickets/{ticket_id}"] == 2
    assert routes["<unmatched>"] == 1
    assert "/api/tickets/abc" not in routes


def test_log_records_carry_the_bound_request():
    record = logging.LogRecord("helpdesk.tickets", logging.INFO, __file__, 1, "ticket created", None, None)
    tokens = bind_request("req-9", "acme-corp")
    try:
        RequestContextFilter().filter(record)
    finally:
        unbind_request(tokens)

    entry = json.loads(JSONFormatter().format(record))
    assert entry["message"] == "ticket created"
    assert entry["request_id"] == "req-9"
    assert entry["tenant_hint"] == "acme-corp"

    outside = logging.LogRecord("helpdesk.tickets", logging.INFO, __file__, 1, "idle", None, None)
    RequestContextFilter().filter(outside)
    assert "request_id" not in json.loads(JSONFormatter().format(outside))


def test_engine_pool_options_per_backend():
    assert engine_options("sqlite+aiosqlite:///./helpdesk.db") == {"echo": False}
    options = engine_options("postgresql+asyncpg://desk:pw@db:5432/helpdesk")
    assert options["pool_size"] == 10
    assert options["pool_pre_ping"] is True
