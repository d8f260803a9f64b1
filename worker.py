"""Standalone analysis worker process.

Runs the worker pool and lease reaper without the HTTP API. Start as many of
these as needed next to an API started with RUN_WORKERS_IN_API=false; they
coordinate through the database.
"""

import asyncio
import logging

from config.settings import settings
from services.analysis.pipeline import build_pipeline
from services.database import init_db

logging.basicConfig(level=getattr(logging, settings.log_level))
log = logging.getLogger(__name__)


async def run():
    await init_db()
    pipeline = build_pipeline(settings)
    log.info(f"[WORKER] Allowed models: {pipeline.allowlist.models}")
    try:
        await pipeline.pool.run_forever()
    finally:
        await pipeline.pool.stop()


def main():
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        log.info("[WORKER] Interrupted, shutting down")


if __name__ == "__main__":
    main()
