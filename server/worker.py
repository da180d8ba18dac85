"""Queue worker entry point.

    python worker.py            # release stale locks, drain one batch, exit
    python worker.py --daemon   # keep polling until SIGTERM / SIGINT
"""

import argparse
import asyncio
import sys
from typing import List, Optional

from core.container import container
from core.logging import configure_logging, get_logger

logger = get_logger(__name__)


async def run(daemon: bool) -> int:
    settings = container.settings()
    database = container.database()
    await database.startup()

    worker = container.worker()
    sweeper = container.recovery_sweeper() if daemon and settings.recovery_enabled else None

    try:
        if daemon:
            if sweeper is not None:
                await sweeper.start()
            await worker.run_forever()
        else:
            processed = await worker.run_once()
            logger.info("Single pass complete", worker_id=worker.worker_id, processed=processed)
    finally:
        if sweeper is not None:
            await sweeper.stop()
        await database.shutdown()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Workflow queue worker")
    parser.add_argument("--daemon", action="store_true",
                        help="keep processing batches until stopped")
    args = parser.parse_args(argv)

    configure_logging(container.settings())
    try:
        return asyncio.run(run(args.daemon))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
