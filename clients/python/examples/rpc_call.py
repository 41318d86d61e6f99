#!/usr/bin/env python3
"""
Example: One-off RPC calls against a Ralph server
"""

import json
import os
import sys

from ralph_client import RpcClient, TransportError


def main():
    url = os.environ.get("RALPH_RPC_URL", "http://localhost:3000")

    with RpcClient(url) as client:
        print(f"Calling {url}")

        # Read-only call, no idempotency key
        tasks = client.call("task.list", {"includeArchived": False})
        print(json.dumps(tasks, indent=2))

        # Mutating call; the client attaches an idempotency key
        try:
            created = client.call("task.create", {
                "id": "example-task",
                "title": "Example task",
                "status": "open",
                "priority": 2,
            })
            print(f"Created: {created}")
        except TransportError as e:
            print(f"Create failed [{e.code}] retryable={e.retryable}: {e.message}")
            sys.exit(1)


if __name__ == "__main__":
    main()
