#!/usr/bin/env python3
"""Real-world E2E smoke for the help desk API.

Runs a realistic tenant flow against a running backend and fails fast on regressions.
"""

from __future__ import annotations

import json
import re
import sys
import time
from dataclasses import dataclass, field

import httpx

BASE_URL = "http://127.0.0.1:8000"
TIMEOUT = 30.0
TOKEN_PATTERN = re.compile(r"^[ABCDEFGHJKLMNPQRSTUVWXYZ23456789]{8}$")


@dataclass
class SmokeState:
    slug: str = ""
    token: str = ""
    category_id: str | None = None
    ticket_id: str | None = None
    public_token: str | None = None
    headers: dict[str, str] = field(default_factory=dict)


def expect(condition: bool, message: str) -> None:
    if not condition:
        raise AssertionError(message)


def get(client: httpx.Client, path: str, expected: int = 200, **kwargs):
    resp = client.get(f"{BASE_URL}{path}", **kwargs)
    expect(resp.status_code == expected, f"GET {path} -> {resp.status_code} != {expected}; body={resp.text[:500]}")
    return resp


def post(client: httpx.Client, path: str, expected: int = 200, **kwargs):
    resp = client.post(f"{BASE_URL}{path}", **kwargs)
    expect(resp.status_code == expected, f"POST {path} -> {resp.status_code} != {expected}; body={resp.text[:500]}")
    return resp


def put(client: httpx.Client, path: str, expected: int = 200, **kwargs):
    resp = client.put(f"{BASE_URL}{path}", **kwargs)
    expect(resp.status_code == expected, f"PUT {path} -> {resp.status_code} != {expected}; body={resp.text[:500]}")
    return resp


def main() -> int:
    state = SmokeState(slug=f"smoke-{int(time.time())}")
    with httpx.Client(timeout=TIMEOUT) as client:
        # 1) Health
        health = get(client, "/api/health").json()
        expect(health.get("status") == "healthy", "health status is not healthy")
        _ = get(client, "/api/health/ready").json()

        # 2) Sign up an admin together with a fresh organization
        signup = post(
            client,
            "/api/auth/signup",
            expected=201,
            json={
                "email": f"admin@{state.slug}.test",
                "password": "smoke-secret",
                "name": "Smoke Admin",
                "organizationName": "Smoke Test Org",
                "organizationSlug": state.slug,
            },
        ).json()
        state.token = signup["token"]
        state.headers = {"Authorization": f"Bearer {state.token}", "X-Organization-Slug": state.slug}

        me = get(client, "/api/auth/me", headers=state.headers).json()
        expect(me["user"]["organizations"], "signup did not create a membership")

        # 3) Tenant configuration
        statuses = get(client, "/api/statuses", headers=state.headers).json()
        expect([s["name"] for s in statuses][:1] == ["Open"], "default statuses were not seeded")

        category = post(client, "/api/categories", expected=201, json={"name": "Hardware"}, headers=state.headers)
        state.category_id = category.json()["id"]
        post(
            client,
            f"/api/categories/{state.category_id}/assign-user",
            expected=201,
            json={"userId": me["user"]["id"]},
            headers=state.headers,
        )

        # 4) Public submission and tracking
        public = {"X-Organization-Slug": state.slug}
        submitted = post(
            client,
            "/api/tickets/public",
            expected=201,
            json={
                "title": "Printer broken",
                "description": "The second floor printer jams on every page.",
                "submitterName": "Walk-in Guest",
                "submitterEmail": "guest@example.com",
                "categoryId": state.category_id,
            },
            headers=public,
        ).json()
        state.ticket_id = submitted["id"]
        state.public_token = submitted["publicToken"]
        expect(bool(TOKEN_PATTERN.match(state.public_token or "")), "public token has the wrong shape")
        expect(submitted["assignedTo"] == me["user"]["id"], "ticket was not auto-assigned")

        tracked = get(client, f"/api/tickets/public?token={state.public_token}", headers=public).json()
        expect(tracked["id"] == state.ticket_id, "tracking returned the wrong ticket")

        # 5) Agent workflow
        _ = post(
            client,
            f"/api/tickets/{state.ticket_id}/comments",
            expected=201,
            json={"content": "Looking into it."},
            headers=state.headers,
        ).json()
        resolved = next(s for s in statuses if s["name"] == "Resolved")
        updated = put(
            client, f"/api/tickets/{state.ticket_id}", json={"statusId": resolved["id"]}, headers=state.headers
        ).json()
        expect(updated["statusId"] == resolved["id"], "status change did not stick")

        activity = get(client, f"/api/tickets/{state.ticket_id}/activity", headers=state.headers).json()
        expect(len(activity) >= 2, "activity log is missing entries")

        # 6) Reporting
        analytics = get(client, "/api/reports/analytics", headers=state.headers).json()
        expect(analytics["totalTickets"] >= 1, "analytics missing the ticket")
        export = get(client, "/api/reports/export?format=csv", headers=state.headers)
        expect(export.text.startswith('"ID"'), "csv export has no header row")

        # 7) Negative test sanity
        bad = client.get(f"{BASE_URL}/api/tickets/public?token=ZZZZZZZZ", headers=public)
        expect(bad.status_code == 404, f"expected 404 for unknown token, got {bad.status_code}")
        anonymous = client.get(f"{BASE_URL}/api/tickets", headers=public)
        expect(anonymous.status_code == 401, f"expected 401 without a token, got {anonymous.status_code}")

    print(json.dumps({"ok": True, "message": "Help desk real-world smoke passed"}))
    return 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except Exception as exc:  # noqa: BLE001
        print(json.dumps({"ok": False, "error": str(exc)}))
        sys.exit(1)
