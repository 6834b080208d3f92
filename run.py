"""
Entry point: run the publishing pipeline as a background service.

Usage::

    python run.py            # Supabase-backed
    python run.py --memory   # in-memory dry run, nothing persisted
"""

import asyncio
import logging
import signal
import sys

from dotenv import load_dotenv

load_dotenv()

from postflow.config import get_settings  # noqa: E402
from postflow.service import PublishingService  # noqa: E402

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)-8s %(name)s | %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("run")


async def main() -> None:
    service = await PublishingService.create(settings, in_memory="--memory" in sys.argv)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, lambda: asyncio.ensure_future(service.stop()))
        except NotImplementedError:
            # Windows event loops have no signal handlers.
            pass

    if service.notifier:
        await service.notifier.send("Publishing service starting...")
    await service.run()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Interrupted")
        sys.exit(0)
