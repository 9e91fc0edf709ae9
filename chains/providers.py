"""
chains/providers.py - RPC provider management with failover.

Provides reliable RPC access with:
- Multiple endpoint failover and health tracking
- Scheduled rotation (request count / elapsed time)
- JSON-RPC batch requests
- Request timeout handling and an in-flight cap
- Latency tracking
"""

import asyncio
import os
import time
from dataclasses import dataclass
from typing import Any, Callable

import httpx

from core.constants import (
    DEFAULT_MAX_CONSECUTIVE_FAILURES,
    DEFAULT_MAX_IN_FLIGHT,
    DEFAULT_ROTATION_REQUESTS,
    DEFAULT_ROTATION_SECONDS,
    DEFAULT_RPC_TIMEOUT_SECONDS,
)
from core.exceptions import (
    ErrorCode,
    InfraError,
    RateLimitError,
    RPCError,
    RPCTimeoutError,
)
from core.logging import get_logger

logger = get_logger("liqbot.rpc")


@dataclass
class RPCStats:
    """Statistics for an RPC endpoint."""
    url: str
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    consecutive_failures: int = 0
    avg_latency_ms: float = 0.0
    last_error: str | None = None
    last_success_ts: int | None = None

    @property
    def success_rate(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.successful_requests / self.total_requests

    def record_success(self, latency_ms: int) -> None:
        self.total_requests += 1
        self.successful_requests += 1
        self.consecutive_failures = 0
        self.last_success_ts = int(time.time() * 1000)
        # Exponential moving average, 10% weight on the newest sample
        if self.avg_latency_ms == 0:
            self.avg_latency_ms = float(latency_ms)
        else:
            self.avg_latency_ms = self.avg_latency_ms * 0.9 + latency_ms * 0.1

    def record_failure(self, error: str) -> None:
        self.total_requests += 1
        self.failed_requests += 1
        self.consecutive_failures += 1
        self.last_error = error

    def reset_health(self) -> None:
        self.consecutive_failures = 0


@dataclass
class RPCResponse:
    """Response from an RPC call."""
    result: Any
    latency_ms: int
    endpoint_used: str


@dataclass
class BatchItem:
    """One element of a JSON-RPC batch response, in request order."""
    ok: bool
    result: Any = None
    error: str | None = None


def _redact(url: str) -> str:
    """Trim endpoint URLs (which often embed API keys) for logs."""
    return url[:40] + "..." if len(url) > 40 else url


class RPCProvider:
    """
    RPC provider with failover support.

    Requests start at the preferred endpoint and fall through to the next
    healthy one. Endpoints with too many consecutive failures are skipped
    until every endpoint is unhealthy, at which point health is reset.
    """

    def __init__(
        self,
        chain_id: int,
        rpc_urls: list[str],
        timeout_seconds: float = DEFAULT_RPC_TIMEOUT_SECONDS,
        max_consecutive_failures: int = DEFAULT_MAX_CONSECUTIVE_FAILURES,
        rotation_requests: int = DEFAULT_ROTATION_REQUESTS,
        rotation_seconds: float = DEFAULT_ROTATION_SECONDS,
        max_in_flight: int = DEFAULT_MAX_IN_FLIGHT,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.chain_id = chain_id
        self.timeout_seconds = timeout_seconds
        self.max_consecutive_failures = max_consecutive_failures
        self.rotation_requests = rotation_requests
        self.rotation_seconds = rotation_seconds
        self._clock = clock
        self._client: httpx.AsyncClient | None = None
        self._request_id = 0
        self._in_flight = asyncio.Semaphore(max_in_flight)

        self.rpc_urls = self._resolve_urls(rpc_urls)

        self.stats: dict[str, RPCStats] = {
            url: RPCStats(url=url) for url in self.rpc_urls
        }

        self._current_index = 0
        self._requests_since_rotation = 0
        self._last_rotation = clock()

    def _resolve_urls(self, urls: list[str]) -> list[str]:
        """Resolve ${VAR} placeholders in URLs from the environment."""
        resolved = []
        for url in urls:
            expanded = os.path.expandvars(url)
            if "${" in expanded or not expanded:
                # Placeholder without a value: endpoint is unusable
                continue
            if expanded not in resolved:
                resolved.append(expanded)
        return resolved

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_seconds),
                limits=httpx.Limits(max_connections=20),
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _next_request_id(self) -> int:
        self._request_id += 1
        return self._request_id

    @property
    def current_url(self) -> str | None:
        if not self.rpc_urls:
            return None
        return self.rpc_urls[self._current_index]

    # ------------------------------------------------------------------
    # Health / rotation
    # ------------------------------------------------------------------

    def _is_healthy(self, url: str) -> bool:
        return self.stats[url].consecutive_failures < self.max_consecutive_failures

    def _endpoint_order(self) -> list[str]:
        """Healthy endpoints starting from the preferred one."""
        n = len(self.rpc_urls)
        ordered = [self.rpc_urls[(self._current_index + i) % n] for i in range(n)]
        healthy = [url for url in ordered if self._is_healthy(url)]
        if healthy:
            return healthy

        logger.warning(
            "All RPC endpoints unhealthy, resetting health metrics",
            extra={"context": {"chain_id": self.chain_id, "endpoints": n}},
        )
        for stats in self.stats.values():
            stats.reset_health()
        return ordered

    def _maybe_rotate(self) -> None:
        """Advance the preferred endpoint on request-count or time triggers."""
        if len(self.rpc_urls) < 2:
            return

        elapsed = self._clock() - self._last_rotation
        if (
            self._requests_since_rotation < self.rotation_requests
            and elapsed < self.rotation_seconds
        ):
            return

        old_index = self._current_index
        n = len(self.rpc_urls)
        for step in range(1, n + 1):
            candidate = (old_index + step) % n
            if self._is_healthy(self.rpc_urls[candidate]):
                self._current_index = candidate
                break

        self._requests_since_rotation = 0
        self._last_rotation = self._clock()

        if self._current_index != old_index:
            logger.info(
                "RPC rotated",
                extra={"context": {
                    "from": _redact(self.rpc_urls[old_index]),
                    "to": _redact(self.rpc_urls[self._current_index]),
                }},
            )

    def _promote(self, url: str) -> None:
        """Make a responsive endpoint the preferred one after failover."""
        index = self.rpc_urls.index(url)
        if index != self._current_index:
            self._current_index = index
            self._requests_since_rotation = 0
            self._last_rotation = self._clock()

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _post(self, url: str, payload: Any) -> Any:
        """POST one JSON-RPC payload, mapping transport failures to typed errors."""
        client = await self._get_client()
        try:
            resp = await client.post(url, json=payload)
        except httpx.TimeoutException as e:
            raise RPCTimeoutError(
                f"Timeout after {self.timeout_seconds}s",
                details={"url": _redact(url)},
            ) from e
        except httpx.HTTPError as e:
            raise InfraError(
                f"Transport error: {e}",
                details={"url": _redact(url)},
            ) from e

        if resp.status_code == 429:
            raise RateLimitError("Rate limited", details={"url": _redact(url)})
        if resp.status_code >= 400:
            raise InfraError(
                f"HTTP {resp.status_code}",
                details={"url": _redact(url)},
            )

        try:
            return resp.json()
        except ValueError as e:
            raise InfraError(
                "Invalid JSON from RPC",
                details={"url": _redact(url)},
            ) from e

    async def _send(self, payload: Any, method: str) -> tuple[Any, int, str]:
        """Send a payload with failover. Returns (body, latency_ms, url)."""
        if not self.rpc_urls:
            raise InfraError(
                "No RPC endpoints configured",
                code=ErrorCode.INFRA_NO_ENDPOINTS,
                details={"chain_id": self.chain_id},
            )

        self._maybe_rotate()
        last_error: Exception | None = None

        async with self._in_flight:
            for url in self._endpoint_order():
                stats = self.stats[url]
                start_ms = int(time.time() * 1000)
                try:
                    body = await self._post(url, payload)
                except InfraError as e:
                    stats.record_failure(e.message)
                    last_error = e
                    logger.debug(
                        f"RPC failed for {_redact(url)}: {e}",
                        extra={"context": {"method": method}},
                    )
                    continue

                latency_ms = int(time.time() * 1000) - start_ms
                stats.record_success(latency_ms)
                self._requests_since_rotation += 1
                self._promote(url)
                return body, latency_ms, url

        if isinstance(last_error, (RateLimitError, RPCTimeoutError)):
            raise last_error
        raise InfraError(
            f"All RPC endpoints failed for chain {self.chain_id}",
            details={
                "chain_id": self.chain_id,
                "method": method,
                "endpoints_tried": len(self.rpc_urls),
                "last_error": str(last_error),
            },
        )

    async def call(
        self,
        method: str,
        params: list | None = None,
    ) -> RPCResponse:
        """
        Make an RPC call with failover.

        Args:
            method: RPC method name
            params: Method parameters

        Returns:
            RPCResponse with result and metadata

        Raises:
            RPCError: If the node answered with a JSON-RPC error
            InfraError: If all endpoints fail
        """
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params or [],
            "id": self._next_request_id(),
        }
        body, latency_ms, url = await self._send(payload, method)

        if not isinstance(body, dict):
            raise InfraError("Malformed RPC response", details={"method": method})

        if "error" in body and body["error"] is not None:
            error = body["error"]
            message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
            raise RPCError(
                f"RPC error: {message}",
                details={
                    "method": method,
                    "url": _redact(url),
                    "data": error.get("data") if isinstance(error, dict) else None,
                },
            )

        return RPCResponse(
            result=body.get("result"),
            latency_ms=latency_ms,
            endpoint_used=url,
        )

    async def call_batch(
        self,
        requests: list[tuple[str, list]],
    ) -> list[BatchItem]:
        """
        Send several RPC calls in one JSON-RPC batch request.

        Results are returned in request order; an error on one element does
        not fail the others.
        """
        if not requests:
            return []

        ids = [self._next_request_id() for _ in requests]
        payload = [
            {"jsonrpc": "2.0", "method": method, "params": params, "id": req_id}
            for req_id, (method, params) in zip(ids, requests)
        ]
        body, _, _ = await self._send(payload, "batch")

        if not isinstance(body, list):
            # Some nodes answer a rejected batch with a single error object
            message = body.get("error", body) if isinstance(body, dict) else body
            raise RPCError(f"Batch rejected: {message}", details={"size": len(requests)})

        by_id = {item.get("id"): item for item in body if isinstance(item, dict)}
        items = []
        for req_id in ids:
            entry = by_id.get(req_id)
            if entry is None:
                items.append(BatchItem(ok=False, error="missing response"))
            elif entry.get("error") is not None:
                error = entry["error"]
                message = error.get("message", str(error)) if isinstance(error, dict) else str(error)
                items.append(BatchItem(ok=False, error=message))
            else:
                items.append(BatchItem(ok=True, result=entry.get("result")))
        return items

    # ------------------------------------------------------------------
    # Convenience wrappers
    # ------------------------------------------------------------------

    async def get_block_number(self) -> int:
        """Get latest block number."""
        response = await self.call("eth_blockNumber")
        return int(response.result, 16)

    async def eth_call(
        self,
        to: str,
        data: str,
        block: str = "latest",
    ) -> str:
        """Make eth_call and return the raw hex result."""
        response = await self.call("eth_call", [{"to": to, "data": data}, block])
        return response.result

    async def get_gas_price(self) -> int:
        """Get current gas price in wei."""
        response = await self.call("eth_gasPrice")
        return int(response.result, 16)

    async def get_logs(
        self,
        addresses: list[str],
        topics: list,
        from_block: int,
        to_block: int,
    ) -> list[dict]:
        """Query logs for a bounded block range."""
        response = await self.call(
            "eth_getLogs",
            [{
                "address": addresses,
                "topics": topics,
                "fromBlock": hex(from_block),
                "toBlock": hex(to_block),
            }],
        )
        return response.result or []

    async def estimate_gas(self, tx: dict) -> int:
        """Estimate gas units for a transaction."""
        response = await self.call("eth_estimateGas", [tx])
        return int(response.result, 16)

    async def get_transaction_count(self, address: str, block: str = "pending") -> int:
        response = await self.call("eth_getTransactionCount", [address, block])
        return int(response.result, 16)

    async def send_raw_transaction(self, raw_tx: str) -> str:
        response = await self.call("eth_sendRawTransaction", [raw_tx])
        return response.result

    async def get_transaction_receipt(self, tx_hash: str) -> dict | None:
        response = await self.call("eth_getTransactionReceipt", [tx_hash])
        return response.result

    def get_stats_summary(self) -> dict:
        """Get statistics summary for all endpoints."""
        return {
            "current": _redact(self.current_url) if self.current_url else None,
            "requests_since_rotation": self._requests_since_rotation,
            "endpoints": {
                _redact(url): {
                    "total_requests": s.total_requests,
                    "success_rate": round(s.success_rate, 3),
                    "avg_latency_ms": round(s.avg_latency_ms),
                    "consecutive_failures": s.consecutive_failures,
                    "healthy": self._is_healthy(url),
                    "last_error": s.last_error,
                }
                for url, s in self.stats.items()
            },
        }
