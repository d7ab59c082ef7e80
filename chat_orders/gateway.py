"""Messaging Gateway implementations.

The gateway owns transport concerns, retries included. Callers hand it a
recipient and a text body and only see success or ``GatewayError``.
"""

import logging
from typing import Optional, Protocol

import httpx
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from chat_orders.errors import GatewayError

logger = logging.getLogger(__name__)

GRAPH_API_BASE = "https://graph.facebook.com"


class MessagingGateway(Protocol):
    async def send(self, to: str, body: str, phone_number_id: Optional[str] = None) -> None:
        ...

    async def aclose(self) -> None:
        ...


class _RetryableResponse(Exception):
    def __init__(self, status_code: int):
        super().__init__(f"HTTP {status_code}")
        self.status_code = status_code


class WhatsAppCloudGateway:
    def __init__(
        self,
        token: str,
        default_phone_number_id: Optional[str] = None,
        api_version: str = "v18.0",
        client: Optional[httpx.AsyncClient] = None,
        attempts: int = 3,
        wait_min: float = 1,
        wait_max: float = 8,
    ):
        self._token = token
        self._default_phone_number_id = default_phone_number_id
        self._api_version = api_version
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(10.0))
        self._owns_client = client is None
        self._attempts = attempts
        self._wait_min = wait_min
        self._wait_max = wait_max

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def send(self, to: str, body: str, phone_number_id: Optional[str] = None) -> None:
        sender = phone_number_id or self._default_phone_number_id
        if not sender:
            raise GatewayError("No phone number id available to send from")

        url = f"{GRAPH_API_BASE}/{self._api_version}/{sender}/messages"
        payload = {
            "messaging_product": "whatsapp",
            "to": to,
            "type": "text",
            "text": {"body": body},
        }
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._attempts),
                wait=wait_exponential(multiplier=1, min=self._wait_min, max=self._wait_max),
                retry=retry_if_exception_type((httpx.TransportError, _RetryableResponse)),
            ):
                with attempt:
                    response = await self._client.post(
                        url,
                        json=payload,
                        headers={"Authorization": f"Bearer {self._token}"},
                    )
                    if response.status_code >= 500 or response.status_code == 429:
                        raise _RetryableResponse(response.status_code)
        except RetryError as exc:
            raise GatewayError(f"Sending to {to} failed after {self._attempts} attempts") from exc

        if response.status_code >= 400:
            raise GatewayError(f"Sending to {to} rejected: HTTP {response.status_code} {response.text}")
        logger.info("WhatsApp message sent to %s", to)


class LoggingGateway:
    """Logs replies instead of sending them, for local runs without credentials."""

    async def send(self, to: str, body: str, phone_number_id: Optional[str] = None) -> None:
        logger.info("--- REPLY to %s (from %s) ---\n%s", to, phone_number_id or "-", body)

    async def aclose(self) -> None:
        pass
