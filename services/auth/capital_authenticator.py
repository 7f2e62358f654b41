"""Capital.com login exchange."""

from typing import Optional, Tuple

import httpx

from core.config.settings import CapitalSettings
from core.logging import get_logger
from core.utils.exceptions import AuthenticationError

logger = get_logger(__name__, component="session_cache")


class CapitalAuthenticator:
    """Posts credentials to ``/api/v1/session`` and reads the session headers."""

    broker = "capital"

    def __init__(self, settings: CapitalSettings, http_client: Optional[httpx.AsyncClient] = None):
        self.settings = settings
        self._client = http_client or httpx.AsyncClient(
            base_url=settings.base_url, timeout=settings.request_timeout_seconds
        )
        self._owns_client = http_client is None

    async def login(self) -> Tuple[str, str]:
        try:
            response = await self._client.post(
                "/api/v1/session",
                headers={"X-CAP-API-KEY": self.settings.api_key, "Content-Type": "application/json"},
                json={
                    "identifier": self.settings.identifier,
                    "password": self.settings.password,
                    "encryptedPassword": False,
                },
            )
        except httpx.HTTPError as e:
            raise AuthenticationError(f"Capital login request failed: {e}", auth_provider=self.broker) from e

        if response.status_code >= 400:
            logger.error("Capital login rejected", status_code=response.status_code, body=response.text[:300])
            raise AuthenticationError(
                f"Capital login rejected with status {response.status_code}",
                auth_provider=self.broker,
                details={"status_code": response.status_code},
            )

        security_token = response.headers.get("X-SECURITY-TOKEN")
        client_session_token = response.headers.get("CST")
        if not security_token or not client_session_token:
            raise AuthenticationError("Capital login response missing session headers", auth_provider=self.broker)
        return security_token, client_session_token

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
