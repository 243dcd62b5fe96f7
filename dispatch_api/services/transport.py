"""Channel transports used by the drain loop."""

from typing import Optional, Protocol
from urllib.parse import quote

import httpx

from dispatch_api.config import Settings, get_settings
from dispatch_api.logging_config import get_logger

logger = get_logger("transport")

PROVIDER_NOT_CONFIGURED = "provider not configured"


class TransportError(Exception):
    pass


class TransportNotConfiguredError(TransportError):
    def __init__(self, message: str = PROVIDER_NOT_CONFIGURED):
        super().__init__(message)


class Transport(Protocol):
    async def send(self, client_id: str, to: str, message: str) -> dict: ...


class EvolutionTransport:
    """Sends text messages through an Evolution API instance."""

    def __init__(self, base_url: str, instance: str, api_key: str, timeout: float = 15.0):
        if not base_url or not instance or not api_key:
            raise TransportNotConfiguredError()
        self.base_url = base_url.rstrip("/")
        self.instance = instance
        self.api_key = api_key
        self.timeout = timeout

    @property
    def send_text_url(self) -> str:
        return f"{self.base_url}/message/sendText/{quote(self.instance, safe='')}"

    async def send(self, client_id: str, to: str, message: str) -> dict:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    self.send_text_url,
                    headers={"apikey": self.api_key},
                    json={"number": to, "text": message},
                )
        except httpx.HTTPError as e:
            raise TransportError(f"Evolution sendText failed: {e}") from e

        if response.status_code < 200 or response.status_code >= 300:
            raise TransportError(f"Evolution sendText failed: HTTP {response.status_code} {response.text}")

        try:
            body = response.json()
        except ValueError:
            body = {"raw": response.text}
        return {"evolution": body}


def get_transport(settings: Optional[Settings] = None) -> Optional[Transport]:
    """Build the configured transport, or None when credentials are missing."""
    settings = settings or get_settings()
    try:
        return EvolutionTransport(
            settings.evolution_base_url or "",
            settings.evolution_instance or "",
            settings.evolution_api_key or "",
        )
    except TransportNotConfiguredError:
        logger.warning("Evolution transport not configured")
        return None
