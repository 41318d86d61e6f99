"""
Ralph Python Client

A Python client library for the Ralph RPC v1 API and its task event stream.
Features resumable subscriptions, cursor checkpointing, debounced
acknowledgments and automatic reconnection.
"""

from ralph_client.config import (
    ReconnectConfig,
    StreamConfig,
    STREAM_TOPICS,
)
from ralph_client.cursor import CursorTracker
from ralph_client.events import decode_frame
from ralph_client.exceptions import (
    RalphClientError,
    TransportError,
    SubscriptionError,
    StreamDecodeError,
)
from ralph_client.models import (
    BackpressureNotice,
    ConnectionState,
    LogEntry,
    StreamEventEnvelope,
    SubscribeResult,
    TaskEvent,
)
from ralph_client.observer import CallbackObserver, StreamObserver
from ralph_client.store import InMemoryLogStore, JsonCheckpointStore, LogStore
from ralph_client.stream import TaskStream
from ralph_client.subscription import SubscriptionProtocol, build_stream_url
from ralph_client.transport import (
    AsyncRpcClient,
    MUTATING_METHODS,
    RpcClient,
)

__version__ = "0.1.0"
__all__ = [
    # Clients
    "RpcClient",
    "AsyncRpcClient",
    "SubscriptionProtocol",
    "TaskStream",
    # Data types
    "BackpressureNotice",
    "ConnectionState",
    "LogEntry",
    "StreamEventEnvelope",
    "SubscribeResult",
    "TaskEvent",
    # Stream plumbing
    "CursorTracker",
    "decode_frame",
    "build_stream_url",
    "LogStore",
    "InMemoryLogStore",
    "JsonCheckpointStore",
    "StreamObserver",
    "CallbackObserver",
    # Configuration
    "ReconnectConfig",
    "StreamConfig",
    "STREAM_TOPICS",
    "MUTATING_METHODS",
    # Exceptions
    "RalphClientError",
    "TransportError",
    "SubscriptionError",
    "StreamDecodeError",
]
