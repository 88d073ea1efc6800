"""Outbound email transports.

Every transport returns an :class:`EmailResult` instead of raising, and
flags rate-limit rejections separately so the dispatcher can tell a
retryable refusal from a permanent failure.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass

import httpx

from rendezvous.config import Settings

log = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"
_RATE_LIMIT_MARKERS = ("rate limit", "too many requests")


@dataclass
class EmailResult:
    status: str  # "sent" | "failed"
    message_id: str = ""
    error: str = ""
    rate_limited: bool = False

    @property
    def sent(self) -> bool:
        return self.status == "sent"


def looks_rate_limited(status_code: int | None, message: str) -> bool:
    if status_code == 429:
        return True
    lowered = (message or "").lower()
    return any(marker in lowered for marker in _RATE_LIMIT_MARKERS)


class EmailTransport(ABC):
    @abstractmethod
    async def send(self, to: str, subject: str, html: str) -> EmailResult:
        ...


class ConsoleTransport(EmailTransport):
    """Logs emails instead of sending them (local development)."""

    def __init__(self, from_address: str = ""):
        self.from_address = from_address
        self._counter = 0

    async def send(self, to: str, subject: str, html: str) -> EmailResult:
        self._counter += 1
        log.info("EMAIL (console) from=%s to=%s subject=%r (%d chars)", self.from_address, to, subject, len(html))
        return EmailResult(status="sent", message_id=f"console-{self._counter}")


class ResendTransport(EmailTransport):
    """Send through the Resend HTTP API."""

    def __init__(
        self, api_key: str, from_address: str, *,
        client: httpx.AsyncClient | None = None, timeout: float = 30.0,
    ):
        self.api_key = api_key
        self.from_address = from_address
        self._client = client
        self._timeout = timeout

    async def _post(self, client: httpx.AsyncClient, payload: dict) -> httpx.Response:
        return await client.post(
            RESEND_API_URL,
            headers={"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"},
            json=payload,
        )

    async def send(self, to: str, subject: str, html: str) -> EmailResult:
        payload = {"from": self.from_address, "to": [to], "subject": subject, "html": html}
        try:
            if self._client is not None:
                response = await self._post(self._client, payload)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await self._post(client, payload)
        except httpx.HTTPError as exc:
            log.error("Resend request to %s failed: %s", to, exc)
            return EmailResult(status="failed", error=str(exc))

        if response.status_code in (200, 201, 202):
            try:
                message_id = str(response.json().get("id", ""))
            except ValueError:
                message_id = ""
            return EmailResult(status="sent", message_id=message_id)

        try:
            body = response.json()
            error = str(body.get("message") or body.get("error") or response.text[:200])
        except ValueError:
            error = response.text[:200]
        error = f"HTTP {response.status_code}: {error}"
        return EmailResult(
            status="failed", error=error,
            rate_limited=looks_rate_limited(response.status_code, error),
        )


def get_transport(settings: Settings) -> EmailTransport:
    backend = settings.email_backend.lower()
    if backend == "resend":
        if not settings.resend_api_key:
            log.warning("Resend backend selected but RESEND_API_KEY is not set. Falling back to console.")
            return ConsoleTransport(settings.email_from_address)
        return ResendTransport(settings.resend_api_key, settings.email_from_address)
    if backend != "console":
        log.warning("Unknown email backend: %s. Falling back to console.", backend)
    return ConsoleTransport(settings.email_from_address)
