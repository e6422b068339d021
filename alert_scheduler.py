#!/usr/bin/env python3
"""
Alert Scheduler - runs the meter, prepaid balance and notification retry jobs
as a standalone process, without serving HTTP.
"""

import logging
import signal
import threading

from app import create_app
from config import configure_logging

logger = logging.getLogger(__name__)


def main():
    """Main scheduler function"""
    configure_logging()
    app = create_app({'ENABLE_SCHEDULER': False})
    scheduler = app.extensions['job_scheduler']

    stop = threading.Event()
    signal.signal(signal.SIGINT, lambda *args: stop.set())
    signal.signal(signal.SIGTERM, lambda *args: stop.set())

    scheduler.start_all_jobs()
    logger.info("Alert scheduler started with %d jobs", len(scheduler.get_jobs()))

    # Run an initial meter check
    scheduler.run_job('meter-abnormality-check')

    try:
        while not stop.wait(60):
            pass
    finally:
        scheduler.shutdown()
        logger.info("Alert scheduler stopped")


if __name__ == '__main__':
    main()
