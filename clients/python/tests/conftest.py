"""Shared fakes for stream tests.

FakeSocket / FakeSocketFactory stand in for ``websockets.connect``;
FakeProtocol stands in for SubscriptionProtocol and records every call.
"""

from __future__ import annotations

import asyncio
import json
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Sequence, Union

import pytest

from ralph_client import InMemoryLogStore, LogEntry, StreamConfig, SubscribeResult, TaskStream
from ralph_client.config import ReconnectConfig

_CLOSE = object()


class FakeSocket:
    def __init__(self, url: str):
        self.url = url
        self.closed = False
        self._queue: asyncio.Queue = asyncio.Queue()

    def push(self, frame: Union[Dict[str, Any], str]) -> None:
        self._queue.put_nowait(frame if isinstance(frame, str) else json.dumps(frame))

    def drop(self) -> None:
        """Server-side close."""
        self._queue.put_nowait(_CLOSE)

    def fail(self, exc: BaseException) -> None:
        self._queue.put_nowait(exc)

    async def close(self) -> None:
        self.closed = True
        self._queue.put_nowait(_CLOSE)

    def __aiter__(self) -> "FakeSocket":
        return self

    async def __anext__(self) -> str:
        item = await self._queue.get()
        if item is _CLOSE:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item


class FakeSocketFactory:
    def __init__(self):
        self.sockets: List[FakeSocket] = []
        self.errors: Deque[BaseException] = deque()

    async def __call__(self, url: str) -> FakeSocket:
        if self.errors:
            raise self.errors.popleft()
        socket = FakeSocket(url)
        self.sockets.append(socket)
        return socket

    @property
    def last(self) -> FakeSocket:
        return self.sockets[-1]


class FakeProtocol:
    def __init__(self):
        self.subscribe_calls: List[Dict[str, Any]] = []
        self.unsubscribe_calls: List[str] = []
        self.ack_calls: List[tuple] = []
        self.results: Deque[Union[SubscribeResult, BaseException]] = deque()
        self.gate: Optional[asyncio.Event] = None
        self.ack_error: Optional[BaseException] = None
        self.unsubscribe_error: Optional[BaseException] = None
        self._issued = 0

    async def subscribe(self, topics, cursor=None, replay_limit=None, filters=None) -> SubscribeResult:
        self.subscribe_calls.append({
            "topics": list(topics),
            "cursor": cursor,
            "replay_limit": replay_limit,
            "filters": filters,
        })
        if self.gate is not None:
            await self.gate.wait()
        if self.results:
            result = self.results.popleft()
            if isinstance(result, BaseException):
                raise result
            return result
        self._issued += 1
        return SubscribeResult(
            subscription_id=f"sub-{self._issued}",
            accepted_topics=list(topics),
            cursor=cursor or "0-0",
        )

    async def unsubscribe(self, subscription_id: str) -> None:
        self.unsubscribe_calls.append(subscription_id)
        if self.unsubscribe_error is not None:
            raise self.unsubscribe_error

    async def ack(self, subscription_id: str, cursor: str) -> None:
        self.ack_calls.append((subscription_id, cursor))
        if self.ack_error is not None:
            raise self.ack_error


class RecordingStore(InMemoryLogStore):
    def __init__(self):
        super().__init__()
        self.batches: List[List[LogEntry]] = []
        self.saved: List[tuple] = []

    def append_logs(self, task_id: str, batch: Sequence[LogEntry]) -> None:
        self.batches.append(list(batch))
        super().append_logs(task_id, batch)

    def save_cursor(self, task_id: str, cursor: str) -> None:
        self.saved.append((task_id, cursor))
        super().save_cursor(task_id, cursor)


def frame(topic: str, cursor: str, *, task_id: str = "task-1", sequence: Optional[int] = None,
          payload: Any = None, ts: str = "2024-01-01T00:00:00Z") -> Dict[str, Any]:
    return {
        "apiVersion": "v1",
        "stream": "events",
        "topic": topic,
        "cursor": cursor,
        "sequence": sequence,
        "ts": ts,
        "resource": {"type": "task", "id": task_id},
        "replay": {"mode": "live"},
        "payload": payload if payload is not None else {},
    }


async def settle(rounds: int = 10) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def protocol() -> FakeProtocol:
    return FakeProtocol()


@pytest.fixture
def sockets() -> FakeSocketFactory:
    return FakeSocketFactory()


@pytest.fixture
def store() -> RecordingStore:
    return RecordingStore()


@pytest.fixture
def make_stream(protocol, sockets, store):
    created: List[TaskStream] = []

    def factory(task_id: Optional[str] = "task-1", **config_overrides) -> TaskStream:
        reconnect = config_overrides.pop("reconnect", None) or ReconnectConfig()
        config = StreamConfig(rpc_url="http://ralph.test", reconnect=reconnect, **config_overrides)
        stream = TaskStream(
            task_id,
            config=config,
            protocol=protocol,
            store=store,
            socket_factory=sockets,
        )
        created.append(stream)
        return stream

    yield factory
    for stream in created:
        stream._cancel_reconnect()
        stream._cursor.cancel_ack()
        stream._logs.cancel()
