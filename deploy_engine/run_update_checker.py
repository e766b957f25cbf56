# deploy_engine/run_update_checker.py
"""Run the auto-update checker worker."""

import asyncio
import logging
import signal
import sys

from deploy_engine.container import build_container
from deploy_engine.infrastructure.sql.database import init_db
from deploy_engine.orchestrator.update_checker import UpdateChecker

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)


def main():
    """Main entry point."""
    logger.info("Starting Update Checker")

    init_db()
    container = build_container()
    checker = UpdateChecker(
        container.service,
        poll_interval=container.settings.update_check_poll_seconds,
    )

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down...")
        checker.stop()

    signal.signal(signal.SIGTERM, signal_handler)

    try:
        asyncio.run(checker.run_forever())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
