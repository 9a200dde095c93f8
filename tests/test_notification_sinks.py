import json

import httpx
import pytest

from src.config import Settings
from src.core import DeliveryException
from src.outbox.infrastructure import CircuitBreaker, EmailClient, SlackClient
from src.outbox.infrastructure.external import html_to_text


def make_settings(**overrides) -> Settings:
    values = dict(
        slack_bot_token="xoxb-test",
        slack_api_url="https://slack.test/api",
        email_api_key="re_test",
        email_api_url="https://mail.test/emails",
        email_message_domain="tickets.test",
    )
    values.update(overrides)
    return Settings(**values)


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


# ========== Slack ==========

async def test_slack_post_returns_ts():
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200, json={"ok": True, "ts": "1712.0001"})

    slack = SlackClient(make_settings(), http_client=mock_client(handler))

    ts = await slack.post("#tickets-hostel", "hello")
    await slack.reply("#tickets-hostel", ts, "update")

    assert ts == "1712.0001"
    assert str(requests[0].url) == "https://slack.test/api/chat.postMessage"
    assert requests[0].headers["Authorization"] == "Bearer xoxb-test"
    assert json.loads(requests[0].content) == {"channel": "#tickets-hostel", "text": "hello"}
    assert json.loads(requests[1].content)["thread_ts"] == "1712.0001"


async def test_slack_api_error_raises_delivery_exception():
    slack = SlackClient(
        make_settings(),
        http_client=mock_client(lambda request: httpx.Response(200, json={"ok": False, "error": "not_in_channel"})),
    )

    with pytest.raises(DeliveryException) as exc_info:
        await slack.post("#random", "hello")

    assert exc_info.value.channel == "slack"
    assert "not_in_channel" in str(exc_info.value)


async def test_slack_disabled_without_token():
    def handler(request):
        raise AssertionError("no request expected")

    slack = SlackClient(make_settings(slack_bot_token=None), http_client=mock_client(handler))

    assert not slack.enabled
    assert await slack.post("#tickets", "hello") is None
    await slack.reply("#tickets", "1.0", "hello")


def test_slack_channel_for_domain():
    slack = SlackClient(make_settings(slack_channels={"Hostel": "#hostel-desk"}))

    assert slack.channel_for("HOSTEL") == "#hostel-desk"
    assert slack.channel_for("Library") == "#tickets"
    assert slack.channel_for(None) == "#tickets"


# ========== Email ==========

async def test_email_send_threads_with_message_ids():
    payloads = []

    def handler(request):
        assert request.headers["Authorization"] == "Bearer re_test"
        payloads.append(json.loads(request.content))
        return httpx.Response(200, json={"id": "abc"})

    email = EmailClient(make_settings(), http_client=mock_client(handler))

    first = await email.send("student@example.edu", "Ticket #1 received", "<p>Hello &amp; welcome</p>")
    second = await email.send("student@example.edu", "Ticket #1 update", "<p>Update</p>", in_reply_to=first)

    assert first.startswith("<ticket-") and first.endswith("@tickets.test>")
    assert payloads[0]["to"] == ["student@example.edu"]
    assert payloads[0]["headers"] == {"Message-ID": first}
    assert payloads[0]["text"] == "Hello & welcome"
    assert payloads[1]["headers"]["In-Reply-To"] == first
    assert payloads[1]["headers"]["References"] == first
    assert payloads[1]["headers"]["Message-ID"] == second != first


async def test_email_rejection_raises_delivery_exception():
    email = EmailClient(
        make_settings(),
        http_client=mock_client(lambda request: httpx.Response(422, json={"message": "Invalid `to` field"})),
    )

    with pytest.raises(DeliveryException) as exc_info:
        await email.send("not-an-address", "Subject", "<p>x</p>")

    assert "422" in str(exc_info.value)
    assert "Invalid `to` field" in str(exc_info.value)


async def test_email_disabled_by_switch():
    email = EmailClient(make_settings(enable_email_notifications=False))

    assert not email.enabled
    assert await email.send("student@example.edu", "Subject", "<p>x</p>") is None


async def test_transport_errors_open_the_circuit():
    def handler(request):
        raise httpx.ConnectError("connection refused")

    slack = SlackClient(make_settings(), http_client=mock_client(handler))
    slack._max_retries = 1
    slack._circuit_breaker = CircuitBreaker("slack", failure_threshold=2)

    for _ in range(2):
        with pytest.raises(DeliveryException):
            await slack.post("#tickets", "hello")

    with pytest.raises(DeliveryException) as exc_info:
        await slack.post("#tickets", "hello")
    assert "Circuit breaker open" in str(exc_info.value)


def test_html_to_text_strips_markup():
    assert html_to_text("<style>p{}</style><p>Ticket <b>#4</b></p><ul><li>due</li></ul>") == "Ticket #4 due"
