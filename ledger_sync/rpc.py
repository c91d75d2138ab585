import asyncio
import logging
from typing import Any, Dict, List, Optional

import aiohttp

from .errors import OversizedResponseError, RateLimitedError, UpstreamError

logger = logging.getLogger(__name__)

RATE_LIMIT_MARKERS = (
    "rate limit",
    "request limit",
    "too many requests",
    "exceeded its compute units",
    "throughput",
)
OVERSIZED_MARKERS = (
    "query returned more than",
    "response size exceeded",
    "response size should not",
    "log response size exceeded",
    "block range is too large",
    "block range too large",
    "range too large",
    "too many results",
    "limit the query to",
)


def classify_rpc_error(error: Any, status: int = 200) -> UpstreamError:
    if isinstance(error, dict):
        code = error.get("code")
        message = str(error.get("message", ""))
        data = error.get("data")
        if data:
            message = f"{message} {data}"
    else:
        code = None
        message = str(error)
    text = message.lower()
    if status == 429 or any(m in text for m in RATE_LIMIT_MARKERS):
        return RateLimitedError(f"RPC rate limited: {message}", code=code, payload=error)
    if any(m in text for m in OVERSIZED_MARKERS):
        return OversizedResponseError(f"RPC response oversized: {message}", code=code, payload=error)
    return UpstreamError(f"RPC error: {message}", code=code, payload=error)


class RPCClient:
    """JSON-RPC client for the upstream node.

    Rate-limit and oversized-response signals are raised immediately as
    ``RateLimitedError`` / ``OversizedResponseError`` so callers can throttle
    or bisect. Only plain transport failures are retried here, up to
    ``max_retries`` attempts.
    """

    def __init__(self, url: str, max_retries: int = 1, timeout_sec: int = 12):
        self.url = url
        self.max_retries = max(1, max_retries)
        self.timeout = aiohttp.ClientTimeout(total=timeout_sec)
        self._session: Optional[aiohttp.ClientSession] = None
        self._id = 1

    async def __aenter__(self) -> "RPCClient":
        self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._session:
            await self._session.close()

    async def _post(self, payload: Dict[str, Any]) -> Any:
        try:
            async with self._session.post(self.url, json=payload) as resp:
                if resp.status == 429:
                    raise RateLimitedError("RPC rate limited: HTTP 429")
                if resp.status >= 500:
                    raise UpstreamError(f"RPC HTTP {resp.status}")
                data = await resp.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise UpstreamError(f"RPC timeout: {payload['method']}") from e
        except aiohttp.ClientError as e:
            raise UpstreamError(f"RPC transport error: {type(e).__name__}: {e}") from e
        except ValueError as e:
            raise UpstreamError(f"RPC invalid response: {e}") from e
        if not isinstance(data, dict):
            raise UpstreamError(f"RPC invalid response: {data!r}")
        if "error" in data:
            raise classify_rpc_error(data["error"], resp.status)
        return data.get("result")

    async def call(self, method: str, params: List[Any]) -> Any:
        if not self._session:
            raise RuntimeError("RPC session is not initialized")
        payload = {"jsonrpc": "2.0", "id": self._id, "method": method, "params": params}
        self._id += 1

        backoff = 0.5
        for attempt in range(1, self.max_retries + 1):
            try:
                return await self._post(payload)
            except (RateLimitedError, OversizedResponseError):
                raise
            except UpstreamError as e:
                if attempt >= self.max_retries:
                    raise
                logger.debug("RPC %s attempt %d failed: %s", method, attempt, e)
                await asyncio.sleep(backoff)
                backoff *= 2

    async def get_block_by_number(self, block_number: int) -> Optional[Dict[str, Any]]:
        return await self.call("eth_getBlockByNumber", [hex(block_number), False])

    async def get_latest_block_number(self) -> int:
        result = await self.call("eth_blockNumber", [])
        return int(result, 16)

    async def get_logs(
        self,
        from_block: int,
        to_block: int,
        address: Optional[str] = None,
        topics: Optional[List[Any]] = None,
    ) -> List[Dict[str, Any]]:
        f: Dict[str, Any] = {"fromBlock": hex(from_block), "toBlock": hex(to_block)}
        if address:
            f["address"] = address
        if topics:
            f["topics"] = topics
        result = await self.call("eth_getLogs", [f])
        return result or []
