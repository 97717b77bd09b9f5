from __future__ import annotations

import asyncio
import contextlib
import logging
import signal

from taxcredit_service.cli import build_parser
from taxcredit_service.config import QueueSettings
from taxcredit_service.db import close_pool
from taxcredit_service.logging_config import setup_logging
from taxcredit_service.services import build_services


async def _amain() -> int:
    parser = build_parser()
    args = parser.parse_args()

    setup_logging(level=args.log_level.upper())
    logger = logging.getLogger("taxcredit_service.worker")

    settings = QueueSettings.from_env()
    settings.validate()
    if settings.backend == "memory":
        logger.error("TC_QUEUE_BACKEND=memory cannot be shared with the API; use TC_EMBEDDED_WORKERS instead")
        return 2

    services = await build_services(settings)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    await services.start_workers(
        clean=not args.no_clean,
        document_concurrency=args.concurrency if args.concurrency > 0 else None,
        consolidation_concurrency=(
            args.consolidation_concurrency if args.consolidation_concurrency > 0 else None
        ),
    )
    logger.info("Worker running; waiting for jobs")

    try:
        await stop.wait()
    finally:
        logger.info("Shutdown requested; draining in-flight jobs")
        await services.stop_workers(args.grace_seconds)
        await close_pool()

    logger.info("Worker stopped")
    return 0


def main() -> None:
    raise SystemExit(asyncio.run(_amain()))


if __name__ == "__main__":
    main()
