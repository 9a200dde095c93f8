import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from src.config import Settings, get_settings
from src.infrastructure.database import get_session
from src.main import app
from src.outbox.application import NotificationHandlers, OutboxDispatcher
from src.outbox.infrastructure import outbox_repository_scope
from src.tickets.infrastructure import SQLAlchemyNotificationDirectory
from src.tickets.interfaces.dependencies import get_dispatcher, get_uow_scope

from factories import ADMIN, OTHER_STUDENT, STUDENT, FakeChatSink, FakeEmailSink, outbox_rows

CRON_SECRET = "s3cret"


def headers_for(actor):
    headers = {"X-Actor-Id": actor.id, "X-Actor-Role": actor.role}
    if actor.committee_ids:
        headers["X-Actor-Committees"] = ",".join(str(c) for c in sorted(actor.committee_ids))
    return headers


def use_settings(**overrides):
    values = dict(outbox_immediate_dispatch=False, cron_secret=CRON_SECRET, environment="development")
    values.update(overrides)
    app.dependency_overrides[get_settings] = lambda: Settings(**values)


@pytest_asyncio.fixture
async def client(session_maker, session_factory, uow_scope, seeded):
    async def override_session():
        async with session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    chat, email = FakeChatSink(), FakeEmailSink()
    handlers = NotificationHandlers(
        SQLAlchemyNotificationDirectory(session_factory), chat, email, lambda domain: "#tickets"
    )
    dispatcher = OutboxDispatcher(outbox_repository_scope(session_factory), handlers.registry())

    app.dependency_overrides[get_session] = override_session
    app.dependency_overrides[get_uow_scope] = lambda: uow_scope
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    use_settings()

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


async def create(client, actor=STUDENT, **body):
    body.setdefault("category_id", 1)
    body.setdefault("description", "Fan in room A-12 is not working")
    body.setdefault("requester_email", "student1@example.edu")
    response = await client.post("/tickets", json=body, headers=headers_for(actor))
    assert response.status_code == 201, response.text
    return response.json()["ticket"]


# ========== Tickets ==========

async def test_ticket_lifecycle_over_http(client, session_factory):
    ticket = await create(client)
    ticket_id = ticket["id"]
    assert ticket["status"] == "open"
    assert ticket["assigned_to"] == "warden-any"

    response = await client.post(
        f"/tickets/{ticket_id}/status", json={"status": "in_progress"}, headers=headers_for(ADMIN)
    )
    assert response.status_code == 200
    assert response.json()["old_status"] == "open"
    assert response.json()["ticket"]["assigned_to"] == ADMIN.id
    assert "X-Correlation-ID" in response.headers

    response = await client.post(f"/tickets/{ticket_id}/tat", json={"tat": "2 days"}, headers=headers_for(ADMIN))
    assert response.status_code == 200
    assert response.json()["kind"] == "updated"
    assert response.json()["ticket"]["tat"] == "2 days"

    response = await client.get(f"/tickets/{ticket_id}/tat", headers=headers_for(STUDENT))
    assert response.status_code == 200
    info = response.json()
    assert info["tat"] == "2 days"
    assert info["is_breached"] is False
    assert info["extension_count"] == 0

    response = await client.post(
        f"/tickets/{ticket_id}/escalate", json={"note": "Nobody came"}, headers=headers_for(STUDENT)
    )
    assert response.status_code == 200
    body = response.json()
    assert body["reason"] == "manual"
    assert (body["previous_level"], body["escalation_level"]) == (0, 1)
    assert body["escalated_to"] == "warden-any"

    events = await outbox_rows(session_factory)
    assert [e.event_type for e in events] == [
        "ticket.created", "ticket.status.updated", "ticket.tat.updated", "ticket.escalated",
    ]

    response = await client.post("/cron/process-outbox", headers={"Authorization": f"Bearer {CRON_SECRET}"})
    assert response.status_code == 200
    assert response.json() == {"claimed": 4, "delivered": 4, "failed": 0, "dead": 0}


async def test_numeric_tat_is_stored_as_hours(client):
    ticket = await create(client)

    response = await client.post(f"/tickets/{ticket['id']}/tat", json={"tat": 48}, headers=headers_for(ADMIN))

    assert response.status_code == 200
    assert response.json()["ticket"]["tat"] == "48 hours"


async def test_escalate_without_body_then_cooldown(client):
    ticket = await create(client)

    first = await client.post(f"/tickets/{ticket['id']}/escalate", headers=headers_for(ADMIN))
    second = await client.post(f"/tickets/{ticket['id']}/escalate", headers=headers_for(ADMIN))

    assert first.status_code == 200
    assert second.status_code == 409
    assert second.json()["error_type"] == "ConflictException"


@pytest.mark.parametrize(
    "headers, status_code",
    [
        ({}, 401),
        ({"X-Actor-Id": "u1", "X-Actor-Role": "janitor"}, 400),
        ({"X-Actor-Id": "u1", "X-Actor-Role": "committee", "X-Actor-Committees": "a,b"}, 400),
    ],
)
async def test_actor_headers_are_required(client, headers, status_code):
    response = await client.post(
        "/tickets", json={"category_id": 1, "description": "x"}, headers=headers
    )

    assert response.status_code == status_code


async def test_error_mapping(client, session_factory):
    ticket = await create(client)
    url = f"/tickets/{ticket['id']}"

    denied = await client.post(f"{url}/status", json={"status": "in_progress"}, headers=headers_for(STUDENT))
    assert denied.status_code == 403
    assert denied.json()["error_type"] == "PermissionDeniedException"

    foreign = await client.get(f"{url}/tat", headers=headers_for(OTHER_STUDENT))
    assert foreign.status_code == 403

    missing = await client.post("/tickets/999/status", json={"status": "resolved"}, headers=headers_for(ADMIN))
    assert missing.status_code == 404

    same = await client.post(f"{url}/status", json={"status": "open"}, headers=headers_for(ADMIN))
    assert same.status_code == 400

    unknown = await client.post(f"{url}/status", json={"status": "on_hold"}, headers=headers_for(ADMIN))
    assert unknown.status_code == 400
    assert unknown.json()["details"] == {"status": "on_hold", "reason": "unknown"}

    bad_tat = await client.post(f"{url}/tat", json={"tat": "whenever"}, headers=headers_for(ADMIN))
    assert bad_tat.status_code == 400
    assert bad_tat.json()["error_type"] == "TATParseException"

    await client.post(f"{url}/status", json={"status": "resolved"}, headers=headers_for(ADMIN))
    closed = await client.post(f"{url}/tat", json={"tat": "2 days"}, headers=headers_for(ADMIN))
    assert closed.status_code == 409

    # Rejected requests leave no outbox rows behind
    events = await outbox_rows(session_factory)
    assert [e.event_type for e in events] == ["ticket.created", "ticket.status.updated"]


async def test_unknown_category_group_and_blank_description(client, session_factory):
    unknown = await client.post(
        "/tickets", json={"category_id": 404, "description": "Broken"}, headers=headers_for(STUDENT)
    )
    unknown_group = await client.post(
        "/tickets", json={"category_id": 1, "description": "Broken", "group_id": 99}, headers=headers_for(STUDENT)
    )
    blank = await client.post(
        "/tickets", json={"category_id": 1, "description": "   "}, headers=headers_for(STUDENT)
    )

    assert unknown.status_code == 404
    assert unknown_group.status_code == 404
    assert unknown_group.json()["error_type"] == "ResourceNotFoundException"
    assert blank.status_code == 422
    assert await outbox_rows(session_factory) == []


# ========== Cron ==========

async def test_cron_rejects_wrong_secret(client):
    missing = await client.post("/cron/auto-escalate")
    wrong = await client.post("/cron/auto-escalate", headers={"Authorization": "Bearer nope"})

    assert missing.status_code == 401
    assert wrong.status_code == 401


async def test_cron_without_secret_depends_on_environment(client):
    use_settings(cron_secret=None, environment="production")
    assert (await client.get("/cron/auto-escalate")).status_code == 500

    use_settings(cron_secret=None, environment="development")
    assert (await client.get("/cron/auto-escalate")).status_code == 200


async def test_cron_jobs(client):
    await create(client)
    auth = {"Authorization": f"Bearer {CRON_SECRET}"}

    sweep = await client.get("/cron/auto-escalate", headers=auth)
    assert sweep.status_code == 200
    assert sweep.json()["scanned"] == 1
    assert sweep.json()["escalated"] == 0

    reminders = await client.post("/cron/tat-reminders", headers=auth)
    assert reminders.status_code == 200
    assert reminders.json()["tickets_due"] == 0

    drained = await client.post("/cron/process-outbox", params={"batch_limit": 1}, headers=auth)
    assert drained.json()["claimed"] == 1

    failed = await client.get("/cron/outbox/failed", headers=auth)
    assert failed.status_code == 200
    assert failed.json() == []

    too_big = await client.post("/cron/process-outbox", params={"batch_limit": 501}, headers=auth)
    assert too_big.status_code == 422
