"""
Resumable task stream.

``TaskStream`` keeps one task's event feed alive across socket drops and
server restarts: it subscribes with the last known cursor, reads frames from
the stream socket, checkpoints and acknowledges cursors, and reconnects with
exponential backoff until told to stop.

Everything runs on one asyncio event loop. Timers (reconnect, ack, flush)
are ``call_later`` handles with at most one pending of each kind. Async
continuations capture the connection generation they were started for and
become no-ops once a newer ``connect()`` or a ``disconnect()`` supersedes it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Coroutine, List, Optional, Set, Union

import websockets
from websockets.exceptions import ConnectionClosedOK, WebSocketException

from ralph_client.config import (
    TOPIC_ERROR,
    TOPIC_KEEPALIVE,
    TOPIC_LOG_LINE,
    TOPIC_STATUS_CHANGED,
    StreamConfig,
)
from ralph_client.cursor import CursorTracker
from ralph_client.events import (
    EventRing,
    LogBuffer,
    backpressure_from,
    decode_frame,
    status_from,
    to_log_entry,
    to_task_event,
)
from ralph_client.exceptions import RalphClientError, StreamDecodeError, TransportError
from ralph_client.models import ConnectionState, LogEntry, StreamEventEnvelope, TaskEvent
from ralph_client.observer import StreamObserver, notify
from ralph_client.store import InMemoryLogStore, LogStore
from ralph_client.subscription import SubscriptionProtocol, build_stream_url
from ralph_client.transport import AsyncRpcClient

logger = logging.getLogger("ralph_client")

SocketFactory = Callable[[str], Awaitable[Any]]

SOCKET_ERROR_MESSAGE = "WebSocket stream connection failed"
_SOCKET_ERRORS = (OSError, asyncio.TimeoutError, WebSocketException)


class TaskStream:
    """
    Streams one task's logs and events over an RPC v1 subscription.

    Example:
        async with TaskStream("task-1", observer=MyObserver()) as stream:
            await asyncio.sleep(60)
            print(stream.entries[-1].line)

    ``connect()`` and ``disconnect()`` are plain methods and must be called
    from a running event loop; the network work they start runs in
    background tasks. Use ``aclose()`` to also wait for that work.
    """

    def __init__(
        self,
        task_id: Optional[str],
        *,
        config: Optional[StreamConfig] = None,
        protocol: Optional[SubscriptionProtocol] = None,
        store: Optional[LogStore] = None,
        observer: Optional[StreamObserver] = None,
        socket_factory: Optional[SocketFactory] = None,
    ):
        """
        Initialize the stream. Nothing connects until ``connect()``.

        Args:
            task_id: Task whose stream to follow; None means an idle stream
            config: Stream configuration (default: ``StreamConfig()``)
            protocol: Subscription calls (default: built from ``config.rpc_url``)
            store: Log history and checkpoints (default: in-memory)
            observer: Notification hooks
            socket_factory: Coroutine opening a socket for a URL
                (default: ``websockets.connect``)
        """
        self._config = config or StreamConfig()
        self._owns_protocol = protocol is None
        self._protocol: Optional[SubscriptionProtocol] = protocol
        self._store = store if store is not None else InMemoryLogStore()
        self._observer = observer
        self._socket_factory = socket_factory or websockets.connect

        self._task_id = task_id
        self._state = ConnectionState.DISCONNECTED
        self._task_status = "unknown"
        self._error: Optional[str] = None

        self._socket: Optional[Any] = None
        self._subscription_id: Optional[str] = None
        self._generation = 0
        self._disconnecting = False
        self._reconnect_attempt = 0
        self._reconnect_handle: Optional[asyncio.TimerHandle] = None
        self._reconnect_delay_ms: Optional[int] = None
        self._ack_failures = 0
        self._background: Set[asyncio.Task] = set()

        self._cursor = CursorTracker(self._on_ack_due, debounce_ms=self._config.ack_debounce_ms)
        self._logs = LogBuffer(self._flush_logs, debounce_ms=self._config.flush_debounce_ms)
        self._events = EventRing(self._config.max_events)

        if task_id:
            self._cursor.reset(self._store.get_last_cursor(task_id))

    # ------------------------------------------------------------------
    # Public state
    # ------------------------------------------------------------------

    @property
    def task_id(self) -> Optional[str]:
        return self._task_id

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def task_status(self) -> str:
        return self._task_status

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def subscription_id(self) -> Optional[str]:
        return self._subscription_id

    @property
    def last_cursor(self) -> Optional[str]:
        return self._cursor.last_cursor

    @property
    def reconnect_attempt(self) -> int:
        return self._reconnect_attempt

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_handle is not None

    @property
    def reconnect_delay_ms(self) -> Optional[int]:
        """Delay of the pending reconnect, None when none is pending."""
        return self._reconnect_delay_ms if self._reconnect_handle is not None else None

    @property
    def ack_failures(self) -> int:
        """Consecutive failed acks since the last successful one."""
        return self._ack_failures

    @property
    def entries(self) -> List[LogEntry]:
        return self._store.get_logs(self._task_id) if self._task_id else []

    @property
    def latest_entry(self) -> Optional[LogEntry]:
        entries = self.entries
        return entries[-1] if entries else None

    @property
    def events(self) -> List[TaskEvent]:
        return self._events.events

    @property
    def latest_event(self) -> Optional[TaskEvent]:
        return self._events.latest

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def connect(self) -> None:
        """(Re)open the stream, resuming from the last known cursor."""
        if not self._task_id:
            self.disconnect()
            return

        self._disconnecting = False
        self._generation += 1
        generation = self._generation

        self._cancel_reconnect()
        self._cursor.cancel_ack()
        self._close_socket()

        prior = self._subscription_id
        self._subscription_id = None
        if prior:
            self._unsubscribe_quietly(prior)

        self._set_state(ConnectionState.CONNECTING)
        self._set_error(None)

        if self._protocol is None:
            self._protocol = SubscriptionProtocol(AsyncRpcClient(self._config.rpc_url))

        resume_cursor = self._cursor.resume_cursor(self._store.get_last_cursor(self._task_id))
        logger.info("Connecting task stream", extra={
            "task_id": self._task_id,
            "cursor": resume_cursor,
            "attempt": self._reconnect_attempt,
        })
        self._spawn(self._run(generation, self._task_id, resume_cursor))

    def disconnect(self) -> None:
        """Stop the stream. Terminal until ``connect()`` is called again."""
        self._disconnecting = True
        self._generation += 1

        self._cancel_reconnect()
        self._logs.cancel()
        self._cursor.cancel_ack()

        self._logs.flush()
        self._checkpoint()
        self._close_socket()

        subscription_id = self._subscription_id
        self._subscription_id = None
        if subscription_id:
            self._unsubscribe_quietly(subscription_id)

        self._set_state(ConnectionState.DISCONNECTED)

    def set_task(self, task_id: Optional[str]) -> None:
        """Follow a different task, dropping all state of the current one."""
        if task_id == self._task_id:
            return
        self.disconnect()
        self._logs.discard()
        self._task_id = task_id
        self._reconnect_attempt = 0
        self._task_status = "unknown"
        self._events.clear()
        self._set_error(None)
        self._cursor.reset(self._store.get_last_cursor(task_id) if task_id else None)
        if task_id and self._config.auto_connect:
            self.connect()

    def clear_entries(self) -> None:
        if self._task_id:
            self._store.clear_logs(self._task_id)
        self._set_error(None)

    async def aclose(self) -> None:
        """Disconnect and wait for outstanding unsubscribe/ack calls."""
        self.disconnect()
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
        if self._owns_protocol and self._protocol is not None:
            rpc = self._protocol.rpc
            self._protocol = None
            await rpc.close()

    async def __aenter__(self) -> "TaskStream":
        if self._config.auto_connect:
            self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Connection lifecycle (async continuations)
    # ------------------------------------------------------------------

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation and not self._disconnecting

    async def _run(self, generation: int, task_id: str, resume_cursor: Optional[str]) -> None:
        try:
            subscription = await self._protocol.subscribe(
                self._config.topics,
                cursor=resume_cursor,
                replay_limit=self._config.replay_limit,
                filters={"taskId": task_id},
            )
        except RalphClientError as e:
            if not self._is_current(generation):
                return
            logger.warning("Subscribe failed", extra={"task_id": task_id, "error": str(e)})
            self._subscribe_failed(str(e))
            return
        except Exception as e:
            if not self._is_current(generation):
                return
            logger.error("Subscribe failed unexpectedly", exc_info=True, extra={"task_id": task_id})
            self._subscribe_failed(str(e))
            return

        if not self._is_current(generation):
            logger.debug("Discarding stale subscription", extra={
                "subscription_id": subscription.subscription_id,
            })
            self._unsubscribe_quietly(subscription.subscription_id)
            return

        self._subscription_id = subscription.subscription_id
        self._cursor.advance(subscription.cursor)

        url = build_stream_url(
            subscription.subscription_id,
            ws_url=self._config.ws_url,
            rpc_base_url=self._config.rpc_url,
        )
        try:
            socket = await self._socket_factory(url)
        except _SOCKET_ERRORS as e:
            if not self._is_current(generation):
                return
            logger.warning("Stream socket failed to open", extra={"url": url, "error": str(e)})
            self._socket_error()
            self._socket_closed()
            return

        if not self._is_current(generation):
            await socket.close()
            return

        self._socket = socket
        self._set_state(ConnectionState.CONNECTED)
        self._reconnect_attempt = 0
        self._set_error(None)
        logger.info("Task stream connected", extra={
            "task_id": task_id,
            "subscription_id": subscription.subscription_id,
        })

        try:
            async for message in socket:
                if not self._is_current(generation):
                    break
                self._handle_message(message)
        except ConnectionClosedOK:
            pass
        except _SOCKET_ERRORS as e:
            if self._is_current(generation):
                logger.warning("Stream socket error", extra={"error": str(e)})
                self._socket_error()

        if self._is_current(generation):
            self._socket_closed()

    def _subscribe_failed(self, message: str) -> None:
        self._set_state(ConnectionState.ERROR)
        self._set_error(message or "Stream connection failed")
        self._schedule_reconnect()

    def _socket_error(self) -> None:
        self._set_state(ConnectionState.ERROR)
        self._set_error(SOCKET_ERROR_MESSAGE)

    def _socket_closed(self) -> None:
        self._socket = None
        self._set_state(ConnectionState.DISCONNECTED)
        self._logs.cancel()
        self._logs.flush()
        self._checkpoint()

        closed = self._subscription_id
        self._subscription_id = None
        if closed:
            self._unsubscribe_quietly(closed)

        logger.info("Task stream closed", extra={
            "task_id": self._task_id,
            "subscription_id": closed,
            "cursor": self._cursor.last_cursor,
        })
        if not self._disconnecting:
            self._schedule_reconnect()

    def _close_socket(self) -> None:
        socket = self._socket
        self._socket = None
        if socket is not None:
            self._spawn(socket.close())

    # ------------------------------------------------------------------
    # Reconnect
    # ------------------------------------------------------------------

    def _schedule_reconnect(self) -> None:
        if not self._task_id or self._disconnecting:
            return
        reconnect = self._config.reconnect
        if not reconnect.enabled:
            return
        if reconnect.exhausted(self._reconnect_attempt):
            logger.error("Max reconnection attempts exceeded", extra={
                "max_attempts": reconnect.max_attempts,
            })
            return

        self._cancel_reconnect()
        delay_ms = reconnect.delay_for(self._reconnect_attempt)
        self._reconnect_delay_ms = delay_ms
        self._reconnect_handle = asyncio.get_running_loop().call_later(
            delay_ms / 1000.0, self._fire_reconnect,
        )
        logger.info("Reconnect scheduled", extra={
            "attempt": self._reconnect_attempt,
            "delay_ms": delay_ms,
        })

    def _fire_reconnect(self) -> None:
        self._reconnect_handle = None
        self._reconnect_attempt += 1
        self.connect()

    def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    # ------------------------------------------------------------------
    # Frame handling
    # ------------------------------------------------------------------

    def _handle_message(self, message: Union[str, bytes]) -> None:
        if self._disconnecting:
            return
        try:
            event = decode_frame(message)
        except StreamDecodeError as e:
            logger.debug("Dropping malformed frame", extra={"error": str(e)})
            return

        # Resume point moves before any topic-specific side effect.
        self._cursor.observe(event.cursor)
        self._dispatch(event)

    def _dispatch(self, event: StreamEventEnvelope) -> None:
        if event.topic == TOPIC_LOG_LINE:
            if event.resource_id != self._task_id:
                return
            self._logs.append(to_log_entry(event))
            return

        if event.topic == TOPIC_STATUS_CHANGED and event.resource_id == self._task_id:
            status = status_from(event)
            if status:
                self._task_status = status
                notify(self._observer, "on_status", status)

        if event.topic == TOPIC_ERROR:
            notice = backpressure_from(event)
            if notice is not None:
                logger.warning("Server dropped stream events", extra={
                    "subscription_id": self._subscription_id,
                    "error": notice.message,
                })
                self._set_error(notice.message)

        if event.topic != TOPIC_KEEPALIVE:
            task_event = to_task_event(event)
            self._events.append(task_event)
            notify(self._observer, "on_event", task_event)

    def _flush_logs(self, batch: List[LogEntry]) -> None:
        if not self._task_id:
            return
        self._store.append_logs(self._task_id, batch)
        for entry in batch:
            notify(self._observer, "on_log", entry)

    # ------------------------------------------------------------------
    # Checkpoints and best-effort calls
    # ------------------------------------------------------------------

    def _checkpoint(self) -> None:
        cursor = self._cursor.last_cursor
        if not self._task_id or not cursor:
            return
        try:
            self._store.save_cursor(self._task_id, cursor)
        except Exception:
            logger.warning("Checkpoint save failed", exc_info=True, extra={
                "task_id": self._task_id,
                "cursor": cursor,
            })

    def _on_ack_due(self, cursor: str) -> None:
        self._checkpoint()
        subscription_id = self._subscription_id
        if not subscription_id or self._disconnecting:
            return
        self._spawn(self._ack(subscription_id, cursor))

    async def _ack(self, subscription_id: str, cursor: str) -> None:
        try:
            await self._protocol.ack(subscription_id, cursor)
        except TransportError as e:
            self._ack_failures += 1
            logger.warning("Ack failed", extra={
                "subscription_id": subscription_id,
                "cursor": cursor,
                "consecutive_failures": self._ack_failures,
                "error": e.message,
            })
            return
        self._ack_failures = 0

    def _unsubscribe_quietly(self, subscription_id: str) -> None:
        self._spawn(self._unsubscribe(subscription_id))

    async def _unsubscribe(self, subscription_id: str) -> None:
        try:
            await self._protocol.unsubscribe(subscription_id)
        except TransportError as e:
            logger.warning("Unsubscribe failed", extra={
                "subscription_id": subscription_id,
                "error": e.message,
            })

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _spawn(self, coro: Coroutine) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Stream background task failed", exc_info=exc, extra={
                "task_id": self._task_id,
            })

    def _set_state(self, state: ConnectionState) -> None:
        self._state = state
        notify(self._observer, "on_state", state)

    def _set_error(self, message: Optional[str]) -> None:
        if message == self._error:
            return
        self._error = message
        notify(self._observer, "on_error", message)
