"""
Outbox External Service Integrations
====================================

Notification sinks used by the outbox handlers:
- Slack Web API (chat.postMessage) with threading
- Transactional email HTTP API with Message-ID threading

Both clients share the circuit breaker and retry loop. A sink that is
switched off, or has no credentials, reports enabled=False and the handlers
skip it. A configured sink that cannot deliver raises DeliveryException so
the outbox row is retried.
"""

import asyncio
import re
import time
import html as html_module
from typing import Any, Dict, List, Optional
from uuid import uuid4

import httpx

from src.config import Settings, settings as default_settings
from src.core import DeliveryException
from src.outbox.application.interfaces import IChatSink, IEmailSink
from src.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

RETRY_STATUSES = {429, 500, 502, 503, 504}


class CircuitState:
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """
    Circuit breaker for an external notification service.

    States:
    - CLOSED: Normal operation, requests pass through
    - OPEN: After N failures, reject all requests for M seconds
    - HALF_OPEN: After timeout, allow one test request
    """

    def __init__(self, name: str, failure_threshold: int = 5, recovery_timeout: float = 60.0):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._last_failure_time: Optional[float] = None

    @property
    def state(self) -> str:
        if self._state == CircuitState.OPEN and self._last_failure_time is not None:
            if time.monotonic() - self._last_failure_time >= self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
        return self._state

    def allow_request(self) -> bool:
        return self.state in (CircuitState.CLOSED, CircuitState.HALF_OPEN)

    def record_success(self) -> None:
        self._failure_count = 0
        self._state = CircuitState.CLOSED

    def record_failure(self) -> None:
        self._failure_count += 1
        self._last_failure_time = time.monotonic()

        if self._failure_count >= self.failure_threshold and self._state != CircuitState.OPEN:
            self._state = CircuitState.OPEN
            logger.warning(
                "Circuit breaker opened",
                extra={
                    "service": self.name,
                    "failure_count": self._failure_count,
                    "recovery_timeout": self.recovery_timeout
                }
            )


class _HTTPSink:
    """Shared HTTP plumbing: lazy client, breaker and retries."""

    service_name = "http"

    def __init__(
        self,
        timeout_seconds: float,
        max_retries: int = 3,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self._timeout = timeout_seconds
        self._max_retries = max_retries
        self._http_client = http_client
        self._circuit_breaker = CircuitBreaker(self.service_name)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout)
        return self._http_client

    async def _request(self, url: str, headers: Dict[str, str], payload: Dict[str, Any]) -> httpx.Response:
        if not self._circuit_breaker.allow_request():
            raise DeliveryException(self.service_name, "Circuit breaker open")

        last_error = "no attempt made"
        for attempt in range(self._max_retries):
            try:
                client = await self._get_client()
                response = await client.post(url, headers=headers, json=payload)
                if response.status_code not in RETRY_STATUSES:
                    return response
                last_error = f"HTTP {response.status_code}"
                logger.warning(
                    f"{self.service_name} returned retryable status",
                    extra={"status_code": response.status_code, "attempt": attempt + 1}
                )
            except httpx.HTTPError as e:
                last_error = f"{type(e).__name__}: {e}"
                logger.warning(
                    f"{self.service_name} request failed",
                    extra={"error": last_error, "attempt": attempt + 1}
                )

            if attempt < self._max_retries - 1:
                await asyncio.sleep(2 ** attempt)

        self._circuit_breaker.record_failure()
        raise DeliveryException(self.service_name, last_error)

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None


class SlackClient(_HTTPSink, IChatSink):
    """
    Slack Web API client.

    post() returns the message ``ts``, which later replies pass as
    ``thread_ts``.
    """

    service_name = "slack"

    def __init__(self, config: Optional[Settings] = None, http_client: Optional[httpx.AsyncClient] = None):
        self._settings = config or default_settings
        super().__init__(self._settings.slack_timeout_seconds, http_client=http_client)

    @property
    def enabled(self) -> bool:
        return bool(self._settings.enable_slack_notifications and self._settings.slack_bot_token)

    def channel_for(self, domain: Optional[str]) -> str:
        """Channel for a ticket domain, falling back to the default channel."""
        if domain:
            channel = self._settings.slack_channels.get(domain.strip().lower())
            if channel:
                return channel
        return self._settings.slack_default_channel

    async def post(
        self, channel: str, text: str, blocks: Optional[List[Dict[str, Any]]] = None
    ) -> Optional[str]:
        if not self.enabled:
            logger.debug("Slack disabled, skipping message", extra={"channel": channel})
            return None
        message: Dict[str, Any] = {"channel": channel, "text": text}
        if blocks:
            message["blocks"] = blocks
        data = await self._call("chat.postMessage", message)
        return data.get("ts")

    async def reply(self, channel: str, message_ref: str, text: str) -> None:
        if not self.enabled:
            return
        await self._call("chat.postMessage", {"channel": channel, "text": text, "thread_ts": message_ref})

    async def _call(self, method: str, message: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self._settings.slack_api_url.rstrip('/')}/{method}"
        headers = {
            "Authorization": f"Bearer {self._settings.slack_bot_token}",
            "Content-Type": "application/json; charset=utf-8",
        }
        response = await self._request(url, headers, message)

        try:
            data = response.json()
        except ValueError:
            data = {}
        if response.status_code != 200 or not data.get("ok"):
            self._circuit_breaker.record_failure()
            error = data.get("error") or f"HTTP {response.status_code}"
            raise DeliveryException(self.service_name, f"{method} failed: {error}")

        self._circuit_breaker.record_success()
        logger.info("Slack message sent", extra={"channel": message.get("channel"), "ts": data.get("ts")})
        return data


def html_to_text(content: str) -> str:
    """Plain-text alternative for an HTML body."""
    text = re.sub(r"<(script|style)[^>]*>.*?</\1>", "", content, flags=re.DOTALL | re.I)
    text = re.sub(r"<[^>]+>", " ", text)
    text = re.sub(r"\s+", " ", text).strip()
    return html_module.unescape(text)


class EmailClient(_HTTPSink, IEmailSink):
    """
    Transactional email client (Resend-compatible JSON API).

    Every message gets a generated Message-ID header, which is returned so
    later notifications can thread with In-Reply-To/References.
    """

    service_name = "email"

    def __init__(self, config: Optional[Settings] = None, http_client: Optional[httpx.AsyncClient] = None):
        self._settings = config or default_settings
        super().__init__(self._settings.email_timeout_seconds, http_client=http_client)

    @property
    def enabled(self) -> bool:
        return bool(self._settings.enable_email_notifications and self._settings.email_api_key)

    def new_message_id(self) -> str:
        return f"<ticket-{uuid4().hex}@{self._settings.email_message_domain}>"

    async def send(
        self,
        to: str,
        subject: str,
        html: str,
        in_reply_to: Optional[str] = None,
        references: Optional[str] = None,
    ) -> Optional[str]:
        if not self.enabled:
            logger.debug("Email disabled, skipping message", extra={"subject": subject})
            return None

        message_id = self.new_message_id()
        mail_headers = {"Message-ID": message_id}
        if in_reply_to:
            mail_headers["In-Reply-To"] = in_reply_to
            mail_headers["References"] = references or in_reply_to

        payload: Dict[str, Any] = {
            "from": self._settings.email_from,
            "to": [to],
            "subject": subject,
            "html": html,
            "headers": mail_headers,
        }
        text = html_to_text(html)
        if text:
            payload["text"] = text

        headers = {
            "Authorization": f"Bearer {self._settings.email_api_key}",
            "Content-Type": "application/json",
        }
        response = await self._request(self._settings.email_api_url, headers, payload)

        if not 200 <= response.status_code < 300:
            self._circuit_breaker.record_failure()
            detail = None
            try:
                data = response.json()
                if isinstance(data, dict):
                    detail = data.get("message") or data.get("error")
            except ValueError:
                detail = None
            error = f"Email API error: {response.status_code}"
            if detail:
                error = f"{error} ({detail})"
            raise DeliveryException(self.service_name, error)

        self._circuit_breaker.record_success()
        logger.info("Email sent", extra={"subject": subject, "message_id": message_id})
        return message_id
