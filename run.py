"""
Entry point: run the scheduled post publisher until interrupted.

Binds the Redis queue worker (or the in-memory fallback when Redis is
unreachable) and keeps publishing due posts into Supabase.

Usage::

    python run.py
"""

import asyncio
import logging
import sys

from dotenv import load_dotenv

load_dotenv()

from src.config import get_settings, validate_env  # noqa: E402

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)-8s %(name)s | %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("run")

# How often the running service logs queue statistics (seconds)
STATS_INTERVAL_SECONDS = 300


async def main() -> None:
    from src.database import SupabaseDB
    from src.scheduling.service import ScheduledPostService

    validate_env(strict=True)

    db = await SupabaseDB.create()
    service = ScheduledPostService(post_creator=db, settings=settings)
    service.start()

    try:
        await service.initialize()
        logger.info("Scheduled post publisher running (backend=%s)", service.backend_type.value)

        while True:
            stats = await service.stats()
            logger.info("Queue stats: %s", stats.to_dict())
            await asyncio.sleep(STATS_INTERVAL_SECONDS)
    finally:
        await service.close()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Interrupted")
        sys.exit(0)
