"""Entry point for the node-execution worker process."""

from __future__ import annotations

import argparse
import asyncio
from typing import Optional, Sequence

from canvasflow.config import Settings, get_settings
from canvasflow.logging import configure_logging, get_logger
from canvasflow.service.consumer import QueueConsumer
from canvasflow.service.runtime import build_worker_context

logger = get_logger(__name__)


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Consume canvas node tasks and run them")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Poll every source once, handle at most one task, then exit",
    )
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    parser.add_argument(
        "--sources",
        default=None,
        help="Comma-separated queue sources, highest priority first (overrides QUEUE_SOURCES)",
    )
    return parser.parse_args(argv)


async def serve(settings: Settings, *, once: bool = False) -> int:
    context = build_worker_context(settings)
    verify = getattr(context.queue, "verify_connection", None)
    if callable(verify):
        await asyncio.to_thread(verify)
    consumer = QueueConsumer(context)
    consumer.install_signal_handlers()
    try:
        if once:
            await consumer.poll_once()
        else:
            await consumer.run()
    finally:
        await context.aclose()
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    if args.log_level:
        configure_logging(args.log_level)
    settings = get_settings()
    if args.sources:
        settings = Settings.model_validate(
            {**settings.model_dump(), "queue_sources": args.sources}
        )
    logger.info("worker_starting", queue_sources=settings.queue_sources, once=args.once)
    return asyncio.run(serve(settings, once=args.once))


if __name__ == "__main__":
    raise SystemExit(main())
