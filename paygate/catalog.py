from typing import Any, Dict, List, Optional
import logging

import httpx

from .config import Settings
from .models import DiscoverResponse

logger = logging.getLogger(__name__)


SERVICES_PATH = "/api/x402/services"


class ServiceCatalog:
    """Read-only view of the payment-gated services a resource server offers."""

    def __init__(self, settings: Settings, client: httpx.AsyncClient) -> None:
        self.settings = settings
        self.client = client

    async def discover(self) -> DiscoverResponse:
        if not self.settings.resource_configured:
            return DiscoverResponse(
                services=[],
                server_url="",
                configured=False,
                error="RESOURCE_SERVICE_URL not configured",
            )

        server_url = self.settings.resource_base_url
        try:
            response = await self.client.get(
                f"{server_url}{SERVICES_PATH}",
                headers={"Content-Type": "application/json", "Cache-Control": "no-store"},
                timeout=self.settings.http_timeout_seconds,
            )
        except httpx.HTTPError as exc:
            logger.warning("Service discovery against %s failed: %s", server_url, exc)
            return DiscoverResponse(
                services=[],
                server_url=server_url,
                configured=True,
                error=f"Failed to connect to resource server: {_describe(exc)}",
            )

        if not response.is_success:
            return DiscoverResponse(
                services=[],
                server_url=server_url,
                configured=True,
                error=f"Failed to fetch services: {response.status_code} {response.reason_phrase}",
            )

        try:
            data = response.json()
        except ValueError:
            return DiscoverResponse(
                services=[],
                server_url=server_url,
                configured=True,
                error="Failed to fetch services: response is not valid JSON",
            )

        services = data.get("services") if isinstance(data, dict) else None
        if not isinstance(services, list):
            services = []
        return DiscoverResponse(
            services=services,
            server_url=server_url,
            configured=True,
        )


def find_service(services: List[Dict[str, Any]], service_id: str) -> Optional[Dict[str, Any]]:
    for entry in services:
        if isinstance(entry, dict) and entry.get("id") == service_id:
            return entry
    return None


def _describe(exc: Exception) -> str:
    return str(exc) or type(exc).__name__
