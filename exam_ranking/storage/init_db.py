"""
Database initialization script

Usage:
    python -m exam_ranking.storage.init_db           # create tables
    python -m exam_ranking.storage.init_db --drop    # drop, then create
    python -m exam_ranking.storage.init_db --warm    # also rebuild the global board
"""

import asyncio
import logging
import sys

from exam_ranking.services.rank_service import RankQueryService
from exam_ranking.storage.database import drop_db, engine, init_db
from exam_ranking.storage.redis_store import build_ranking_cache
from exam_ranking.storage.result_store import ResultStore

logger = logging.getLogger(__name__)


async def main():
    """Initialize database schema"""
    logger.info(f"[INIT] Initializing database at {engine.url.render_as_string(hide_password=True)}")

    if "--drop" in sys.argv:
        logger.warning("[INIT] Dropping all tables")
        await drop_db()

    await init_db()
    logger.info("[INIT] Tables ready")

    if "--warm" in sys.argv:
        cache = build_ranking_cache()
        await cache.connect()
        try:
            service = RankQueryService(ResultStore(), cache)
            await service.warm_up()
        finally:
            await cache.disconnect()

    await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
