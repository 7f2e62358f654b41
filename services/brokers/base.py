"""Shared httpx plumbing for broker REST adapters."""

import time
from typing import Any, Dict, Optional

import httpx

from core.logging import get_logger
from core.monitoring.prometheus_metrics import GatewayMetrics
from core.utils.exceptions import BrokerConnectionError, BrokerTimeoutError

logger = get_logger(__name__, component="brokers")


class RestClient:
    """Owns an ``httpx.AsyncClient`` and turns transport failures into broker errors.

    Subclasses map non-2xx responses in ``_raise_for_response``.
    """

    broker: str = "unknown"

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 10.0,
        http_client: Optional[httpx.AsyncClient] = None,
        metrics: Optional[GatewayMetrics] = None,
    ):
        self._client = http_client or httpx.AsyncClient(base_url=base_url, timeout=timeout_seconds)
        self._owns_client = http_client is None
        self.metrics = metrics

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _send(self, method: str, path: str, operation: str, **kwargs: Any) -> httpx.Response:
        start = time.perf_counter()
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise BrokerTimeoutError(f"{operation} timed out", broker=self.broker) from e
        except httpx.TransportError as e:
            raise BrokerConnectionError(f"{operation} failed: {e}", broker=self.broker) from e
        finally:
            if self.metrics is not None:
                self.metrics.broker_latency.labels(broker=self.broker, operation=operation).observe(
                    time.perf_counter() - start
                )

        if response.status_code >= 400:
            logger.warning(
                "Broker call failed",
                broker=self.broker,
                operation=operation,
                status_code=response.status_code,
                body=response.text[:500],
            )
            self._raise_for_response(response, operation)
        return response

    def _raise_for_response(self, response: httpx.Response, operation: str) -> None:
        raise NotImplementedError

    @staticmethod
    def _json_or_empty(response: httpx.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {"data": data}
