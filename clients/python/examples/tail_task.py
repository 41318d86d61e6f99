#!/usr/bin/env python3
"""
Example: Following one task's log stream with resume and auto-reconnection
"""

import asyncio
import logging
import sys

from ralph_client import (
    CallbackObserver,
    ConnectionState,
    JsonCheckpointStore,
    ReconnectConfig,
    StreamConfig,
    TaskStream,
)


def on_state(state: ConnectionState):
    if state == ConnectionState.CONNECTED:
        print("[Connection] Connected to stream")
    elif state == ConnectionState.CONNECTING:
        print("[Connection] Subscribing...")
    elif state == ConnectionState.DISCONNECTED:
        print("[Connection] Disconnected")
    elif state == ConnectionState.ERROR:
        print("[Connection] Error")


def on_log(entry):
    stream = sys.stderr if entry.source == "stderr" else sys.stdout
    print(f"{entry.timestamp} {entry.line}", file=stream)


async def main(task_id: str):
    config = StreamConfig.from_env(
        reconnect=ReconnectConfig(initial_delay_ms=1000, max_delay_ms=30000, jitter=0.1),
    )
    # Checkpoints survive restarts, so a rerun resumes where this one stopped
    store = JsonCheckpointStore(".ralph/checkpoints.json")
    observer = CallbackObserver(
        on_state=on_state,
        on_log=on_log,
        on_status=lambda status: print(f"[Task] {status}"),
        on_error=lambda message: message and print(f"[Error] {message}"),
    )

    print(f"Following task {task_id}, press Ctrl+C to stop\n")
    try:
        async with TaskStream(task_id, config=config, store=store, observer=observer):
            await asyncio.Event().wait()
    finally:
        store.close()


if __name__ == "__main__":
    if len(sys.argv) != 2:
        print(f"usage: {sys.argv[0]} TASK_ID")
        sys.exit(2)
    logging.basicConfig(level=logging.INFO)
    try:
        asyncio.run(main(sys.argv[1]))
    except KeyboardInterrupt:
        print("\nShutting down...")
