import signal
import sys
import threading

import structlog

from application.reconciler import AccrualReconciler
from config import ConfigError, load_settings
from domain.errors import PersistenceError
from infrastructure.accrual.client import HttpAccrualClient
from infrastructure.db.store import open_store
from infrastructure.logging_config import setup_logging
from infrastructure.scheduler import ReconcileScheduler

logger = structlog.get_logger(__name__)


def main() -> int:
    try:
        settings = load_settings()
    except ConfigError as exc:
        print(f"configuration error: {exc}", file=sys.stderr)
        return 2

    setup_logging(settings.log_level, settings.log_format)

    try:
        store = open_store(settings.database_uri, settings.storage_timeout)
    except PersistenceError as exc:
        logger.critical("store_open_failed", error=str(exc))
        return 1

    accrual_client = HttpAccrualClient(
        settings.accrual_address,
        timeout=settings.accrual_timeout,
        retry_attempts=settings.accrual_retry_attempts,
        retry_max_wait=settings.accrual_retry_max_wait,
        retry_total_wait=settings.accrual_retry_total_wait,
    )
    reconciler = AccrualReconciler(
        store.orders,
        accrual_client,
        deadline=settings.reconcile_deadline,
    )
    scheduler = ReconcileScheduler(reconciler, settings.poll_interval)

    stop = threading.Event()

    def handle_signal(signum, frame) -> None:
        logger.info("shutdown_signal_received", signal=signum)
        stop.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    # The HTTP layer binds `run_address`; this process only hosts the core.
    logger.info(
        "service_starting",
        run_address=settings.run_address,
        accrual_address=settings.accrual_address,
        poll_interval=settings.poll_interval,
    )
    scheduler.start()
    try:
        stop.wait()
    finally:
        # Let the running pass finish its in-flight call before closing the client.
        scheduler.shutdown(wait=True)
        accrual_client.close()
        logger.info("service_stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
