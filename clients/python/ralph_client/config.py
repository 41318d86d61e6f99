"""
Ralph Client Configuration
"""

from __future__ import annotations

import os
import random
from dataclasses import dataclass, field
from typing import Optional, Tuple

DEFAULT_RPC_URL = "http://localhost:3000"
RPC_PATH = "/rpc/v1"
STREAM_PATH = "/rpc/v1/stream"

TOPIC_LOG_LINE = "task.log.line"
TOPIC_STATUS_CHANGED = "task.status.changed"
TOPIC_ERROR = "error.raised"
TOPIC_KEEPALIVE = "stream.keepalive"

STREAM_TOPICS: Tuple[str, ...] = (
    TOPIC_LOG_LINE,
    TOPIC_STATUS_CHANGED,
    TOPIC_ERROR,
    TOPIC_KEEPALIVE,
)

BACKPRESSURE_DROPPED = "BACKPRESSURE_DROPPED"


@dataclass
class ReconnectConfig:
    """Configuration for automatic reconnection."""
    enabled: bool = True
    initial_delay_ms: int = 1000
    max_delay_ms: int = 30000
    multiplier: float = 2.0
    max_attempts: int = 0  # 0 = unlimited
    jitter: float = 0.0

    def delay_for(self, attempt: int) -> int:
        """Backoff delay in milliseconds before reconnect number ``attempt``."""
        # Exponent clamped to keep the float finite.
        growth = self.multiplier ** min(attempt, 64)
        delay = min(self.initial_delay_ms * growth, self.max_delay_ms)
        if self.jitter:
            delay += delay * self.jitter * (2 * random.random() - 1)
        return int(delay)

    def exhausted(self, attempt: int) -> bool:
        return self.max_attempts > 0 and attempt >= self.max_attempts


@dataclass
class StreamConfig:
    """Configuration for a task stream."""
    rpc_url: str = DEFAULT_RPC_URL
    ws_url: Optional[str] = None
    topics: Tuple[str, ...] = STREAM_TOPICS
    replay_limit: int = 400
    ack_debounce_ms: int = 250
    flush_debounce_ms: int = 50
    max_events: int = 200
    auto_connect: bool = True
    reconnect: ReconnectConfig = field(default_factory=ReconnectConfig)

    @classmethod
    def from_env(cls, **overrides) -> "StreamConfig":
        """Build a config from ``RALPH_*`` environment variables.

        Explicit keyword overrides win over the environment.
        """
        values = {}
        rpc_url = os.environ.get("RALPH_RPC_URL", "").rstrip("/")
        if rpc_url:
            values["rpc_url"] = rpc_url
        ws_url = os.environ.get("RALPH_STREAM_URL", "")
        if ws_url:
            values["ws_url"] = ws_url
        replay_limit = os.environ.get("RALPH_REPLAY_LIMIT", "")
        if replay_limit:
            values["replay_limit"] = int(replay_limit)
        values.update(overrides)
        return cls(**values)
