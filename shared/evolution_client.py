"""
Evolution API client for WhatsApp messaging.

This module provides the EvolutionClient class for interacting with the
Evolution API gateway: sending text messages and managing the per-user
WhatsApp instances (create, connect/QR code, connection state, delete).

All requests authenticate with the global API key in the `apikey` header.
"""

import logging
from typing import Any

import httpx
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from shared.config import get_settings

logger = logging.getLogger(__name__)

# connectionState value reported by Evolution API for a paired instance
STATE_OPEN = "open"


def is_retryable_http_error(exc: BaseException) -> bool:
    """
    Retry transport failures and 429/5xx responses only.

    4xx responses (unknown instance, bad number) are final and re-raised at once.
    """
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        return status == 429 or status >= 500
    return isinstance(exc, httpx.HTTPError)


def is_not_found(exc: BaseException) -> bool:
    return isinstance(exc, httpx.HTTPStatusError) and exc.response.status_code == 404


_gateway_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=10),
    retry=retry_if_exception(is_retryable_http_error),
    reraise=True,
)


class EvolutionClient:
    """
    Client for the Evolution API WhatsApp gateway.

    Args:
        transport: Optional httpx transport (tests inject httpx.MockTransport)
    """

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None):
        settings = get_settings()
        # Remove trailing slash to avoid double slashes in URLs
        self.api_url = settings.EVOLUTION_API_URL.rstrip("/")
        self.headers = {
            "apikey": settings.EVOLUTION_API_KEY,
            "Content-Type": "application/json",
        }
        self._transport = transport

        logger.debug(f"EvolutionClient initialized: {self.api_url}")

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=self._transport, timeout=10.0)

    @_gateway_retry
    async def send_text(self, instance_name: str, number: str, text: str) -> dict[str, Any]:
        """
        Send a WhatsApp text message.

        Args:
            instance_name: Evolution instance that sends the message
            number: Normalized phone number (digits only, country code first)
            text: Message body

        Returns:
            Gateway response payload
        """
        async with self._client() as client:
            try:
                response = await client.post(
                    f"{self.api_url}/message/sendText/{instance_name}",
                    json={"number": number, "text": text},
                    headers=self.headers,
                )
                response.raise_for_status()
                logger.info(
                    f"WhatsApp message sent via {instance_name} to {number}",
                    extra={"instance_name": instance_name},
                )
                return response.json()

            except httpx.HTTPError as e:
                logger.error(f"HTTP error sending WhatsApp message via {instance_name}: {e}")
                raise

    @_gateway_retry
    async def connection_state(self, instance_name: str) -> str:
        """
        Get the connection state of an instance ("open", "close", "connecting").

        Raises:
            httpx.HTTPStatusError: 404 if the instance does not exist
        """
        async with self._client() as client:
            try:
                response = await client.get(
                    f"{self.api_url}/instance/connectionState/{instance_name}",
                    headers=self.headers,
                )
                response.raise_for_status()
                instance = response.json().get("instance") or {}
                return str(instance.get("state", "close"))

            except httpx.HTTPError as e:
                if not is_not_found(e):
                    logger.error(f"HTTP error fetching state of {instance_name}: {e}")
                raise

    @_gateway_retry
    async def create_instance(self, instance_name: str, token: str) -> dict[str, Any]:
        """Create a WhatsApp (Baileys) instance with QR code pairing enabled."""
        async with self._client() as client:
            try:
                response = await client.post(
                    f"{self.api_url}/instance/create",
                    json={
                        "instanceName": instance_name,
                        "qrcode": True,
                        "integration": "WHATSAPP-BAILEYS",
                        "token": token,
                    },
                    headers=self.headers,
                )
                response.raise_for_status()
                logger.info(
                    f"Evolution instance created: {instance_name}",
                    extra={"instance_name": instance_name},
                )
                return response.json()

            except httpx.HTTPError as e:
                logger.error(f"HTTP error creating instance {instance_name}: {e}")
                raise

    @_gateway_retry
    async def connect(self, instance_name: str) -> str | None:
        """
        Request a pairing QR code for an instance.

        Returns:
            Base64 data URL of the QR code, or None if the gateway returned none
            (for example when the instance is already paired)
        """
        async with self._client() as client:
            try:
                response = await client.get(
                    f"{self.api_url}/instance/connect/{instance_name}",
                    headers=self.headers,
                )
                response.raise_for_status()
                data = response.json()
                qrcode = data.get("qrcode")
                if isinstance(qrcode, dict):
                    return qrcode.get("base64")
                return data.get("base64")

            except httpx.HTTPError as e:
                if not is_not_found(e):
                    logger.error(f"HTTP error requesting QR code for {instance_name}: {e}")
                raise

    @_gateway_retry
    async def delete_instance(self, instance_name: str) -> None:
        """
        Delete an instance from the gateway.

        Raises:
            httpx.HTTPStatusError: 404 if the instance does not exist
        """
        async with self._client() as client:
            try:
                response = await client.delete(
                    f"{self.api_url}/instance/delete/{instance_name}",
                    headers=self.headers,
                )
                response.raise_for_status()
                logger.info(
                    f"Evolution instance deleted: {instance_name}",
                    extra={"instance_name": instance_name},
                )

            except httpx.HTTPError as e:
                if not is_not_found(e):
                    logger.error(f"HTTP error deleting instance {instance_name}: {e}")
                raise
