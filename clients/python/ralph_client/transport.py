"""
Ralph RPC v1 Transport

Provides synchronous and asynchronous clients for single-shot RPC v1 calls.
Every call is a POST of a versioned envelope; mutating methods carry a fresh
idempotency key. Nothing here retries.
"""

from __future__ import annotations

import logging
import secrets
import threading
import time
from datetime import datetime, timezone
from typing import Any, FrozenSet, Optional

import httpx

from ralph_client.config import DEFAULT_RPC_URL, RPC_PATH
from ralph_client.exceptions import TransportError
from ralph_client.models import RequestMeta, RpcRequest, RpcResponse

logger = logging.getLogger("ralph_client")

MUTATING_METHODS: FrozenSet[str] = frozenset({
    "task.create",
    "task.update",
    "task.close",
    "task.archive",
    "task.unarchive",
    "task.delete",
    "task.clear",
    "task.run",
    "task.run_all",
    "task.retry",
    "task.cancel",
    "loop.process",
    "loop.prune",
    "loop.retry",
    "loop.discard",
    "loop.stop",
    "loop.merge",
    "loop.trigger_merge_task",
    "planning.start",
    "planning.respond",
    "planning.resume",
    "planning.delete",
    "config.update",
    "collection.create",
    "collection.update",
    "collection.delete",
    "collection.import",
})

_MAX_SAFE_INTEGER = 2 ** 53 - 1
_request_counter = 0
_counter_lock = threading.Lock()


def is_mutating(method: str) -> bool:
    return method in MUTATING_METHODS


def next_request_id() -> str:
    global _request_counter
    with _counter_lock:
        _request_counter = (_request_counter + 1) % _MAX_SAFE_INTEGER
        counter = _request_counter
    return f"req-{int(time.time() * 1000)}-{counter:04x}"


def next_idempotency_key(method: str) -> str:
    return f"idem-{method.replace('.', '-')}-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


def build_request(method: str, params: Any = None, mutating: Optional[bool] = None) -> RpcRequest:
    """Build the request envelope for one call attempt."""
    if mutating is None:
        mutating = is_mutating(method)

    meta = None
    if mutating:
        meta = RequestMeta(
            idempotency_key=next_idempotency_key(method),
            request_ts=datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z"),
        )

    return RpcRequest(
        id=next_request_id(),
        method=method,
        params=params if params is not None else {},
        meta=meta,
    )


def _payload_error(payload: Any, status: int) -> TransportError:
    if isinstance(payload, dict):
        body = RpcResponse.model_validate(payload).error_body
        if body is not None:
            return TransportError(
                body.message,
                code=body.code,
                retryable=body.retryable,
                status=status,
                details=body.details,
            )
        if isinstance(payload.get("message"), str):
            return TransportError(payload["message"], status=status)
    return TransportError("RPC request failed", status=status)


def parse_response(response: httpx.Response) -> Any:
    """Unwrap ``result`` from an HTTP response or raise ``TransportError``."""
    try:
        payload = response.json()
    except ValueError:
        raise TransportError(
            "RPC response is not valid JSON",
            code="INTERNAL",
            status=response.status_code,
        )

    if not response.is_success or (isinstance(payload, dict) and payload.get("error")):
        raise _payload_error(payload, response.status_code)

    if not isinstance(payload, dict) or not RpcResponse.model_validate(payload).has_result:
        raise TransportError(
            "RPC response is missing result payload",
            code="INTERNAL",
            status=response.status_code,
        )

    return payload["result"]


def _endpoint_url(base_url: str, endpoint: str) -> str:
    if endpoint.startswith(("http://", "https://")):
        return endpoint
    return f"{base_url}/{endpoint.lstrip('/')}"


def _network_error(exc: httpx.RequestError) -> TransportError:
    return TransportError(
        str(exc) or "Network request failed",
        code="SERVICE_UNAVAILABLE",
        retryable=True,
    )


class RpcClient:
    """
    Synchronous client for the RPC v1 endpoint.

    Example:
        with RpcClient("http://localhost:3000") as rpc:
            task = rpc.call("task.get", {"id": "task-1"})
    """

    def __init__(
        self,
        base_url: str = DEFAULT_RPC_URL,
        endpoint: str = RPC_PATH,
        timeout: float = 30.0,
        http_client: Optional[httpx.Client] = None,
    ):
        """
        Initialize the client.

        Args:
            base_url: Server origin, e.g. "http://localhost:3000"
            endpoint: Path of the RPC endpoint
            timeout: Request timeout in seconds
            http_client: Pre-built httpx client (owned by the caller)
        """
        self.base_url = base_url.rstrip("/")
        self._url = _endpoint_url(self.base_url, endpoint)
        self._owns_client = http_client is None
        self._http = http_client or httpx.Client(timeout=timeout)

    def call(self, method: str, params: Any = None, *, mutating: Optional[bool] = None) -> Any:
        """
        Issue one RPC call and return its ``result``.

        Args:
            method: Dotted method name, e.g. "task.create"
            params: JSON-serialisable params (defaults to ``{}``)
            mutating: Override the mutating classification

        Raises:
            TransportError: On any failure
        """
        request = build_request(method, params, mutating)
        logger.debug("RPC call", extra={"method": method, "request_id": request.id})
        try:
            response = self._http.post(self._url, json=request.to_wire())
        except httpx.RequestError as e:
            logger.warning("RPC network failure", extra={"method": method, "error": str(e)})
            raise _network_error(e)
        return parse_response(response)

    def close(self) -> None:
        if self._owns_client:
            self._http.close()

    def __enter__(self) -> "RpcClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class AsyncRpcClient:
    """
    Asynchronous client for the RPC v1 endpoint.

    Example:
        async with AsyncRpcClient("http://localhost:3000") as rpc:
            await rpc.call("task.run", {"id": "task-1"})
    """

    def __init__(
        self,
        base_url: str = DEFAULT_RPC_URL,
        endpoint: str = RPC_PATH,
        timeout: float = 30.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._url = _endpoint_url(self.base_url, endpoint)
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)

    async def call(self, method: str, params: Any = None, *, mutating: Optional[bool] = None) -> Any:
        """Issue one RPC call and return its ``result``."""
        request = build_request(method, params, mutating)
        logger.debug("RPC call", extra={"method": method, "request_id": request.id})
        try:
            response = await self._http.post(self._url, json=request.to_wire())
        except httpx.RequestError as e:
            logger.warning("RPC network failure", extra={"method": method, "error": str(e)})
            raise _network_error(e)
        return parse_response(response)

    async def close(self) -> None:
        if self._owns_client:
            await self._http.aclose()

    async def __aenter__(self) -> "AsyncRpcClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
