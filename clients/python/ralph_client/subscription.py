"""
Stream subscription control calls (subscribe, unsubscribe, ack) on top of
the RPC v1 transport, plus stream socket URL construction.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from pydantic import ValidationError

from ralph_client.config import STREAM_PATH
from ralph_client.exceptions import SubscriptionError, TransportError
from ralph_client.models import SubscribeResult
from ralph_client.transport import AsyncRpcClient

logger = logging.getLogger("ralph_client")


class SubscriptionProtocol:
    """
    The three stream control operations.

    None of them is mutating, so none carries an idempotency key. A failed
    subscribe raises ``SubscriptionError``; unsubscribe and ack raise
    ``TransportError`` and callers decide what is best-effort.
    """

    def __init__(self, rpc: AsyncRpcClient):
        self._rpc = rpc

    @property
    def rpc(self) -> AsyncRpcClient:
        return self._rpc

    async def subscribe(
        self,
        topics: Iterable[str],
        cursor: Optional[str] = None,
        replay_limit: Optional[int] = None,
        filters: Optional[Dict[str, Any]] = None,
    ) -> SubscribeResult:
        """
        Open a subscription.

        Args:
            topics: Stream topics to receive
            cursor: Resume point; omit for live-only delivery
            replay_limit: Max events the server replays from ``cursor``
            filters: Server-side filters, e.g. {"taskId": "task-1"}
        """
        params: Dict[str, Any] = {"topics": list(topics)}
        if cursor is not None:
            params["cursor"] = cursor
        if replay_limit is not None:
            params["replayLimit"] = replay_limit
        if filters is not None:
            params["filters"] = filters

        try:
            result = await self._rpc.call("stream.subscribe", params, mutating=False)
        except TransportError as e:
            raise SubscriptionError(e.message, cause=e)
        try:
            subscription = SubscribeResult.model_validate(result)
        except ValidationError:
            raise SubscriptionError("stream.subscribe returned an invalid result")

        logger.info("Subscription active", extra={
            "subscription_id": subscription.subscription_id,
            "topics": subscription.accepted_topics,
            "cursor": subscription.cursor,
            "requested_cursor": cursor,
        })
        return subscription

    async def unsubscribe(self, subscription_id: str) -> None:
        await self._rpc.call("stream.unsubscribe", {"subscriptionId": subscription_id}, mutating=False)
        logger.debug("Unsubscribed", extra={"subscription_id": subscription_id})

    async def ack(self, subscription_id: str, cursor: str) -> None:
        await self._rpc.call(
            "stream.ack",
            {"subscriptionId": subscription_id, "cursor": cursor},
            mutating=False,
        )
        logger.debug("Acknowledged", extra={"subscription_id": subscription_id, "cursor": cursor})


def build_stream_url(
    subscription_id: str,
    ws_url: Optional[str] = None,
    rpc_base_url: Optional[str] = None,
) -> str:
    """
    Build the stream socket URL for a subscription.

    An explicit ``ws_url`` keeps its path and query and gets
    ``subscriptionId`` set on it. Otherwise the URL is derived from the RPC
    origin, upgrading http to ws and https to wss.
    """
    if ws_url:
        parts = urlsplit(ws_url)
        query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k != "subscriptionId"]
        query.append(("subscriptionId", subscription_id))
        return urlunsplit(parts._replace(query=urlencode(query)))

    origin = urlsplit(rpc_base_url or "http://localhost")
    scheme = "wss" if origin.scheme in ("https", "wss") else "ws"
    query = urlencode({"subscriptionId": subscription_id})
    return urlunsplit((scheme, origin.netloc, STREAM_PATH, query, ""))
