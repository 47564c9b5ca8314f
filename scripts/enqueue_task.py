#!/usr/bin/env python3
"""Push a node task onto a worker queue source for local testing.

Usage:
    python scripts/enqueue_task.py --execution-id exec-1 --node-id node-1 \
        --canvas-id canvas-1 --node-type aiModel --prompt "Summarise the notes"

    # Or send a ready-made JSON body:
    python scripts/enqueue_task.py --json '{"executionId": "...", ...}'

Environment Variables:
    REDIS_URL: Redis connection string
    QUEUE_SOURCES: Queue sources; the first one is used unless --source is given
"""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def build_body(args: argparse.Namespace) -> str:
    if args.json:
        payload = json.loads(args.json)
    else:
        inputs = {"prompt": args.prompt}
        if args.model:
            inputs["modelId"] = args.model
        if args.provider:
            inputs["provider"] = args.provider
        payload = {
            "executionId": args.execution_id,
            "nodeId": args.node_id,
            "nodeType": args.node_type,
            "canvasId": args.canvas_id,
            "inputs": inputs,
        }
    # Validate before it reaches the queue
    from canvasflow.service.tasks import parse_envelope

    parse_envelope(json.dumps(payload))
    return json.dumps(payload)


async def enqueue(body: str, source: str) -> None:
    from canvasflow.config import get_settings
    from canvasflow.storage.redis_cache import RedisTaskQueue

    queue = RedisTaskQueue(get_settings().redis_url)
    try:
        await queue.enqueue(source, body)
    finally:
        await queue.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Enqueue a canvas node task")
    parser.add_argument("--json", help="Complete task body as JSON")
    parser.add_argument("--execution-id")
    parser.add_argument("--node-id")
    parser.add_argument("--canvas-id", default="")
    parser.add_argument("--node-type", default="aiModel")
    parser.add_argument("--prompt", default="")
    parser.add_argument("--model", help="Model id, e.g. gpt-4o or dall-e-3")
    parser.add_argument("--provider", help="Provider name or alias")
    parser.add_argument("--source", help="Queue source (defaults to the highest priority)")

    args = parser.parse_args()

    if not args.json and not (args.execution_id and args.node_id):
        print("Error: --json or both --execution-id and --node-id are required")
        sys.exit(1)

    try:
        body = build_body(args)
        from canvasflow.config import get_settings

        source = args.source or get_settings().queue_sources[0]
        asyncio.run(enqueue(body, source))
        print(f"Enqueued task on {source}")
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
