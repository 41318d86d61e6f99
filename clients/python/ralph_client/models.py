"""
Ralph Client Data Types

Wire envelopes for RPC v1 (request, response, stream frame) are pydantic
models; values derived on the client side are plain dataclasses.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

API_VERSION = "v1"


class ConnectionState(str, Enum):
    """State of a task stream connection."""
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class _Envelope(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# ---------------------------------------------------------------------------
# RPC envelopes
# ---------------------------------------------------------------------------


class RequestMeta(_Envelope):
    idempotency_key: str = Field(alias="idempotencyKey")
    request_ts: str = Field(alias="requestTs")


class RpcRequest(_Envelope):
    api_version: str = Field(default=API_VERSION, alias="apiVersion")
    id: str
    method: str
    params: Any = Field(default_factory=dict)
    meta: Optional[RequestMeta] = None

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class RpcErrorBody(_Envelope):
    code: str = "INTERNAL"
    message: str = "RPC request failed"
    retryable: bool = False
    details: Any = None

    @field_validator("code", "message", mode="before")
    @classmethod
    def _non_string_to_default(cls, value: Any, info) -> Any:
        if isinstance(value, str):
            return value
        return cls.model_fields[info.field_name].default

    @field_validator("retryable", mode="before")
    @classmethod
    def _truthy(cls, value: Any) -> bool:
        return bool(value)


class RpcResponse(_Envelope):
    api_version: Any = Field(default=None, alias="apiVersion")
    id: Any = None
    method: Any = None
    result: Any = None
    error: Any = None

    @property
    def has_result(self) -> bool:
        return "result" in self.model_fields_set

    @property
    def error_body(self) -> Optional[RpcErrorBody]:
        if isinstance(self.error, dict):
            return RpcErrorBody.model_validate(self.error)
        return None


class SubscribeResult(_Envelope):
    """Result of ``stream.subscribe``."""
    subscription_id: str = Field(alias="subscriptionId")
    accepted_topics: List[str] = Field(default_factory=list, alias="acceptedTopics")
    cursor: str


# ---------------------------------------------------------------------------
# Stream frames
# ---------------------------------------------------------------------------


class ResourceRef(_Envelope):
    type: Optional[str] = None
    id: Optional[str] = None

    @field_validator("type", "id", mode="before")
    @classmethod
    def _string_or_none(cls, value: Any) -> Any:
        return value if isinstance(value, str) else None


class ReplayInfo(_Envelope):
    mode: str = "live"
    requested_cursor: Optional[str] = Field(default=None, alias="requestedCursor")
    batch: Optional[int] = None

    @field_validator("mode", mode="before")
    @classmethod
    def _mode_or_live(cls, value: Any) -> str:
        return value if isinstance(value, str) else "live"

    @field_validator("requested_cursor", mode="before")
    @classmethod
    def _cursor_or_none(cls, value: Any) -> Any:
        return value if isinstance(value, str) else None

    @field_validator("batch", mode="before")
    @classmethod
    def _int_or_none(cls, value: Any) -> Any:
        if isinstance(value, bool) or not isinstance(value, int):
            return None
        return value


class StreamEventEnvelope(_Envelope):
    """One frame pushed over the stream socket.

    Only ``topic`` and ``cursor`` are required; the rest is tolerated when
    absent so a partial frame still advances resume bookkeeping.
    """
    topic: str
    cursor: str
    api_version: Optional[str] = Field(default=None, alias="apiVersion")
    stream: Optional[str] = None
    sequence: Optional[Union[int, float]] = None
    ts: str = ""
    resource: Optional[ResourceRef] = None
    replay: Optional[ReplayInfo] = None
    payload: Any = None

    @field_validator("sequence", mode="before")
    @classmethod
    def _finite_number(cls, value: Any) -> Any:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        if isinstance(value, float) and not math.isfinite(value):
            return None
        return value

    @field_validator("api_version", "stream", mode="before")
    @classmethod
    def _optional_string(cls, value: Any) -> Any:
        return value if isinstance(value, str) else None

    @field_validator("ts", mode="before")
    @classmethod
    def _string_ts(cls, value: Any) -> str:
        return value if isinstance(value, str) else ""

    @field_validator("resource", "replay", mode="before")
    @classmethod
    def _object_or_none(cls, value: Any) -> Any:
        return value if isinstance(value, dict) else None

    @property
    def resource_id(self) -> Optional[str]:
        return self.resource.id if self.resource else None


# ---------------------------------------------------------------------------
# Derived records
# ---------------------------------------------------------------------------


@dataclass
class LogEntry:
    """A single log line from a task's stream."""
    line: str
    timestamp: str
    source: str = "stdout"
    id: Optional[Union[int, float]] = None
    cursor: Optional[str] = None


@dataclass
class TaskEvent:
    """Lightweight preview of a non-log stream event."""
    ts: str
    topic: str
    payload: Union[str, Dict[str, Any], None] = None
    iteration: Optional[Union[int, float]] = None
    hat: Optional[str] = None
    triggered: Optional[str] = None


@dataclass(frozen=True)
class BackpressureNotice:
    """Server reported that events were dropped for this subscription."""
    code: str
    message: str
