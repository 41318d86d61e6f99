"""
Tests for frame decoding, log entry / event derivation and the buffers.
"""

import asyncio
import json

import pytest

from ralph_client import StreamDecodeError, decode_frame
from ralph_client.events import (
    EventRing,
    LogBuffer,
    backpressure_from,
    status_from,
    to_log_entry,
    to_task_event,
)
from ralph_client.models import LogEntry, TaskEvent

from conftest import frame


def envelope(topic="task.log.line", cursor="1-1", **kwargs):
    return decode_frame(json.dumps(frame(topic, cursor, **kwargs)))


class TestDecodeFrame:

    def test_valid_frame(self):
        event = envelope(sequence=7, payload={"line": "hi"})
        assert event.topic == "task.log.line"
        assert event.cursor == "1-1"
        assert event.sequence == 7
        assert event.resource_id == "task-1"
        assert event.replay.mode == "live"

    def test_minimal_frame(self):
        event = decode_frame('{"topic": "stream.keepalive", "cursor": "5-0"}')
        assert event.resource_id is None
        assert event.payload is None
        assert event.ts == ""

    @pytest.mark.parametrize("raw", [
        "not json",
        "[1, 2, 3]",
        '{"cursor": "1-1"}',
        '{"topic": "task.log.line"}',
        '{"topic": 3, "cursor": "1-1"}',
        '{"topic": "task.log.line", "cursor": null}',
    ])
    def test_malformed_frames(self, raw):
        with pytest.raises(StreamDecodeError):
            decode_frame(raw)

    @pytest.mark.parametrize("resource", [
        {"type": "loop", "id": 42},
        {"type": 7, "id": None},
        {"id": ["task-1"]},
    ])
    def test_wrongly_typed_resource_fields_are_dropped(self, resource):
        event = decode_frame(json.dumps({"topic": "task.log.line", "cursor": "1-4", "resource": resource}))
        assert event.cursor == "1-4"
        assert event.resource_id is None

    def test_wrongly_typed_replay_fields_get_defaults(self):
        event = decode_frame(json.dumps({
            "topic": "task.log.line",
            "cursor": "1-5",
            "replay": {"mode": None, "requestedCursor": 12, "batch": "3"},
        }))
        assert event.replay.mode == "live"
        assert event.replay.requested_cursor is None
        assert event.replay.batch is None

    def test_replay_batch_kept_when_integer(self):
        event = decode_frame(json.dumps({"topic": "x", "cursor": "1-5", "replay": {"mode": "replay", "batch": 3}}))
        assert event.replay.mode == "replay"
        assert event.replay.batch == 3

    def test_wrongly_typed_stream_and_version_are_dropped(self):
        event = decode_frame(json.dumps({"topic": "x", "cursor": "1-6", "stream": 1, "apiVersion": {"v": 1}}))
        assert event.stream is None
        assert event.api_version is None

    def test_bytes_frame(self):
        assert decode_frame(b'{"topic": "a", "cursor": "b"}').topic == "a"


class TestLogEntry:

    def test_line_source_and_timestamp(self):
        entry = to_log_entry(envelope(
            sequence=3,
            payload={"line": "building", "source": "stderr", "timestamp": "2024-02-02T00:00:00Z"},
        ))
        assert entry == LogEntry(
            id=3, cursor="1-1", line="building", timestamp="2024-02-02T00:00:00Z", source="stderr",
        )

    def test_defaults(self):
        entry = to_log_entry(envelope(payload={"message": "hello"}, ts="2024-03-03T00:00:00Z"))
        assert entry.line == "hello"
        assert entry.source == "stdout"
        assert entry.timestamp == "2024-03-03T00:00:00Z"
        assert entry.id is None

    def test_text_field(self):
        assert to_log_entry(envelope(payload={"text": "from text"})).line == "from text"

    def test_non_string_line_falls_back_to_json(self):
        entry = to_log_entry(envelope(payload={"line": 42, "source": "stdout"}))
        assert json.loads(entry.line) == {"line": 42, "source": "stdout"}

    def test_payload_without_line_is_json(self):
        entry = to_log_entry(envelope(payload={"exit": 0}))
        assert entry.line == '{"exit":0}'

    def test_non_object_payload_is_empty(self):
        event = decode_frame(json.dumps({"topic": "task.log.line", "cursor": "1-1", "payload": "raw"}))
        assert to_log_entry(event).line == ""


class TestTaskEvent:

    def test_fields_extracted_from_object_payload(self):
        event = to_task_event(envelope(
            "loop.iteration", payload={"iteration": 4, "hat": "builder", "triggered": "build.done"},
        ))
        assert event.topic == "loop.iteration"
        assert event.iteration == 4
        assert event.hat == "builder"
        assert event.triggered == "build.done"
        assert event.payload == {"iteration": 4, "hat": "builder", "triggered": "build.done"}

    def test_wrongly_typed_fields_are_ignored(self):
        event = to_task_event(envelope("x", payload={"iteration": "4", "hat": 1}))
        assert event.iteration is None
        assert event.hat is None

    def test_payload_normalization(self):
        raw = {"topic": "x", "cursor": "1-1", "ts": "t"}
        assert to_task_event(decode_frame(json.dumps({**raw, "payload": "text"}))).payload == "text"
        assert to_task_event(decode_frame(json.dumps({**raw, "payload": None}))).payload is None
        assert to_task_event(decode_frame(json.dumps({**raw, "payload": [1, 2]}))).payload == "[1,2]"
        assert to_task_event(decode_frame(json.dumps({**raw, "payload": 5}))).payload == "5"


class TestStatusAndErrors:

    def test_status_prefers_to(self):
        assert status_from(envelope("task.status.changed", payload={"from": "queued", "to": "running"})) == "running"
        assert status_from(envelope("task.status.changed", payload={"status": "failed"})) == "failed"
        assert status_from(envelope("task.status.changed", payload={"to": ""})) is None

    def test_backpressure_notice(self):
        notice = backpressure_from(envelope(
            "error.raised", payload={"code": "BACKPRESSURE_DROPPED", "message": "dropped 3 event(s)"},
        ))
        assert notice.code == "BACKPRESSURE_DROPPED"
        assert notice.message == "dropped 3 event(s)"

    def test_other_errors_are_not_notices(self):
        assert backpressure_from(envelope("error.raised", payload={"code": "INTERNAL", "message": "x"})) is None
        assert backpressure_from(envelope("error.raised", payload={})) is None


class TestLogBuffer:

    @pytest.mark.asyncio
    async def test_batches_within_window(self):
        batches = []
        buffer = LogBuffer(batches.append, debounce_ms=20)
        for n in range(3):
            buffer.append(LogEntry(line=f"l{n}", timestamp="t"))
        assert buffer.flush_scheduled
        await asyncio.sleep(0.06)
        assert [[e.line for e in batch] for batch in batches] == [["l0", "l1", "l2"]]
        assert len(buffer) == 0

    def test_flushing_empty_buffer_is_a_noop(self):
        batches = []
        buffer = LogBuffer(batches.append)
        buffer.flush()
        assert batches == []

    @pytest.mark.asyncio
    async def test_discard(self):
        batches = []
        buffer = LogBuffer(batches.append, debounce_ms=10)
        buffer.append(LogEntry(line="x", timestamp="t"))
        buffer.discard()
        await asyncio.sleep(0.03)
        assert batches == []


class TestEventRing:

    def test_oldest_dropped_first(self):
        ring = EventRing(capacity=3)
        for n in range(5):
            ring.append(TaskEvent(ts=str(n), topic="x"))
        assert [e.ts for e in ring.events] == ["2", "3", "4"]
        assert ring.latest.ts == "4"
        ring.clear()
        assert ring.latest is None
