from __future__ import annotations

import logging
import signal
import threading
from typing import Any

from automation.core.config import get_settings
from automation.jobs.scheduler import build_scheduler
from automation.logging import configure_logging
from automation.otel import setup_otel


logger = logging.getLogger("automation.lifecycle")


def main() -> None:
    configure_logging()
    settings = get_settings()
    if settings.otel_enabled:
        setup_otel("automation-worker", True)

    scheduler = build_scheduler(settings)
    stopped = threading.Event()

    def _request_stop(signum: int, _frame: Any) -> None:
        logger.info("worker.stop_requested", extra={"status": signal.Signals(signum).name})
        stopped.set()

    signal.signal(signal.SIGTERM, _request_stop)
    signal.signal(signal.SIGINT, _request_stop)

    scheduler.start()
    try:
        while not stopped.wait(1.0):
            pass
    finally:
        scheduler.stop(timeout=settings.node_timeout_seconds * 2)


if __name__ == "__main__":
    main()
