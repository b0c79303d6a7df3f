from datetime import datetime, timezone

import pytest
from httpx import ASGITransport, AsyncClient

from worklog.core.auth.security import create_access_token
from worklog.dependencies import get_db, get_session_factory
from worklog.main import create_app


@pytest.fixture
async def client(session_factory):
    app = create_app()

    async def _get_db():
        async with session_factory() as session:
            async with session.begin():
                yield session

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


def auth(user) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user.id, user.tenant_id)}"}


async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


async def test_request_id_is_echoed(client):
    resp = await client.get("/health", headers={"X-Request-ID": "abc123"})
    assert resp.headers["X-Request-ID"] == "abc123"


async def test_requires_a_token(client, org):
    resp = await client.get("/timesheets/entries")
    assert resp.status_code == 401


async def test_create_and_fetch_entry(client, org):
    today = datetime.now(timezone.utc).date()
    resp = await client.post("/timesheets/entries", headers=auth(org.member), json={
        "work_date": today.isoformat(),
        "project_id": str(org.project.id),
        "task_id": str(org.task.id),
        "duration_minutes": 90,
        "description": "Checkout form validation",
    })
    assert resp.status_code == 201, resp.text
    body = resp.json()
    assert body["status"] == "draft"
    assert body["duration_minutes"] == 90

    resp = await client.get(f"/timesheets/entries/{body['id']}", headers=auth(org.member))
    assert resp.status_code == 200
    assert resp.json()["id"] == body["id"]


async def test_unknown_entry_renders_error_code(client, org):
    resp = await client.get(f"/timesheets/entries/{org.project.id}", headers=auth(org.member))
    assert resp.status_code == 404
    assert resp.json()["detail"]["code"] == "ENTRY_NOT_FOUND"


async def test_audit_lock_routes_are_admin_only(client, org):
    resp = await client.put(f"/audit-locks/{org.member.id}", headers=auth(org.member), json={"locked": True})
    assert resp.status_code == 403

    resp = await client.put(f"/audit-locks/{org.member.id}", headers=auth(org.owner), json={"locked": True})
    assert resp.status_code == 200, resp.text
    assert resp.json()["is_timesheet_locked"] is True

    resp = await client.get("/audit-locks", headers=auth(org.pm))
    assert [u["id"] for u in resp.json()] == [str(org.member.id)]


async def test_notification_feed_starts_empty(client, org):
    resp = await client.get("/notifications", headers=auth(org.member))
    assert resp.status_code == 200
    assert resp.json() == []


async def test_audit_rows_carry_request_id_and_client_ip(client, org, session_factory):
    from sqlalchemy import select
    from worklog.core.audit.models import AuditLog

    headers = {**auth(org.owner), "X-Request-ID": "lock-req-1", "X-Forwarded-For": "203.0.113.7, 10.0.0.1"}
    resp = await client.put(f"/audit-locks/{org.member.id}", headers=headers, json={"locked": True})
    assert resp.status_code == 200, resp.text

    async with session_factory() as check:
        row = (await check.execute(
            select(AuditLog).where(AuditLog.action == "timesheet.audit_lock")
        )).scalar_one()
    assert row.request_id == "lock-req-1"
    assert row.ip_address == "203.0.113.7"
    assert row.resource_id == str(org.member.id)
