"""
Outbound messaging webhook client.

Hands a rendered reminder to the WhatsApp gateway webhook and returns the
gateway's acknowledgement. Transient HTTP failures are retried with
exponential backoff; anything else surfaces as TransportError.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

REQUEST_TIMEOUT = 30  # seconds
MAX_RETRIES = 3
BACKOFF_FACTOR = 2
RETRY_STATUS_CODES = {429, 500, 502, 503, 504}


class TransportError(Exception):
    """The messaging gateway did not accept the message."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        response_data: dict | None = None,
        recoverable: bool = True,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.response_data = response_data or {}
        self.recoverable = recoverable


@dataclass(frozen=True, slots=True)
class Ack:
    accepted: bool
    message_id: str | None = None
    status: str | None = None


class MessageTransport(Protocol):
    async def send(self, phone: str, body: str) -> Ack: ...

    async def close(self) -> None: ...


class WebhookMessageTransport:
    """POSTs {"phone", "message"} to the configured gateway webhook."""

    def __init__(
        self,
        webhook_url: str,
        token: str | None = None,
        timeout: float = REQUEST_TIMEOUT,
        client: httpx.AsyncClient | None = None,
        backoff_factor: float = BACKOFF_FACTOR,
    ):
        if not webhook_url:
            raise ValueError("A webhook URL is required for the message transport")
        self.webhook_url = webhook_url
        self.token = token
        self.backoff_factor = backoff_factor
        self._client = client or self._create_client(timeout)

    def _create_client(self, timeout: float) -> httpx.AsyncClient:
        limits = httpx.Limits(max_keepalive_connections=10, max_connections=20)
        return httpx.AsyncClient(timeout=httpx.Timeout(timeout), limits=limits)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _request_with_retry(self, payload: dict[str, Any]) -> httpx.Response:
        """Execute the webhook POST with retry and backoff."""
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                response = await self._client.post(
                    self.webhook_url, json=payload, headers=self._headers()
                )
                if response.status_code in RETRY_STATUS_CODES and attempt < MAX_RETRIES:
                    backoff = self.backoff_factor * (2 ** (attempt - 1))
                    logger.debug(
                        "Message webhook retrying request",
                        attempt=attempt,
                        status_code=response.status_code,
                        backoff_seconds=backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
                return response
            except httpx.RequestError as e:
                if attempt >= MAX_RETRIES:
                    raise TransportError(f"Message webhook unreachable: {e}") from e
                backoff = self.backoff_factor * (2 ** (attempt - 1))
                logger.debug(
                    "Message webhook request error, retrying",
                    attempt=attempt,
                    error=str(e),
                    backoff_seconds=backoff,
                )
                await asyncio.sleep(backoff)
        raise TransportError("Message webhook retry loop exhausted")

    async def send(self, phone: str, body: str) -> Ack:
        """
        Deliver one message.

        Args:
            phone: Digits-only destination number
            body: Rendered message text

        Returns:
            Ack from the gateway

        Raises:
            TransportError: gateway rejected the message or could not be reached
        """
        response = await self._request_with_retry({"phone": phone, "message": body})

        try:
            data = response.json() if response.text else {}
        except ValueError:
            data = {}

        if not response.is_success:
            logger.warning(
                "Message webhook rejected message",
                status_code=response.status_code,
                response_size=len(response.text or ""),
            )
            raise TransportError(
                f"Message webhook returned {response.status_code}",
                status_code=response.status_code,
                response_data=data if isinstance(data, dict) else {},
                recoverable=response.status_code in RETRY_STATUS_CODES,
            )

        if not isinstance(data, dict):
            data = {}
        if data.get("accepted") is False or data.get("success") is False:
            raise TransportError(
                "Message webhook did not accept the message",
                status_code=response.status_code,
                response_data=data,
                recoverable=False,
            )

        message_id = data.get("message_id") or data.get("id")
        return Ack(
            accepted=True,
            message_id=str(message_id) if message_id is not None else None,
            status=data.get("status"),
        )
