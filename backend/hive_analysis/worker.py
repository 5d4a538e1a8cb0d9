"""Polling worker that executes queued analysis jobs.

Run with `python -m hive_analysis.worker`.
"""

from __future__ import annotations

import asyncio
import logging

from hive_analysis.db.session import SessionLocal, init_db
from hive_analysis.services.jobs import run_pending_jobs
from hive_analysis.services.openai_client import OpenAIService

POLL_INTERVAL_SECONDS = 5.0

_LOGGER = logging.getLogger(__name__)


async def main(*, once: bool = False) -> None:
    await init_db()
    openai_service = OpenAIService()
    while True:
        async with SessionLocal() as session:
            processed = await run_pending_jobs(session, openai_service=openai_service)
        if processed:
            _LOGGER.info("Processed %d analysis jobs", processed)
        if once:
            return
        await asyncio.sleep(POLL_INTERVAL_SECONDS)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    asyncio.run(main())
