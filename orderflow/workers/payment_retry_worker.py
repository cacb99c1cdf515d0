"""
Payment retry background worker.

Runs on a fixed interval:
- retry failed payments past their cooldown
- sync stale pending payments with the gateway
- archive superseded failures
- purge expired idempotency records
"""
import argparse
import asyncio
import signal
from typing import Any, Dict, Optional

import structlog

from orderflow.container import Container, build_container
from orderflow.database.connection import close_db
from orderflow.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def run_payment_jobs(container: Container, cleanup: bool = True) -> Dict[str, Any]:
    """
    Run one pass of every job.

    A failing job is logged and does not stop the ones after it.
    """
    summary: Dict[str, Any] = {}
    jobs = [
        ("retry", container.retry_service.retry_failed_payments),
        ("sync", container.retry_service.sync_stale_payments),
    ]
    if cleanup:
        jobs.append(("cleanup", container.retry_service.cleanup_old_failures))

    for name, job in jobs:
        try:
            summary[name] = await job()
        except Exception as e:
            logger.error("payment_job_failed", job=name, error=str(e), exc_info=True)
            summary[name] = {"error": str(e)}

    try:
        summary["idempotency_purged"] = await container.idempotency.cleanup_expired()
    except Exception as e:
        logger.error("idempotency_cleanup_failed", error=str(e))

    logger.info("payment_jobs_completed", **{k: v for k, v in summary.items() if k != "retry"})
    return summary


async def start_payment_retry_worker(
    interval_seconds: Optional[int] = None,
    run_once: bool = False,
    container: Optional[Container] = None,
) -> None:
    """
    Start the payment retry worker.

    Args:
        interval_seconds: Seconds between passes (default from settings)
        run_once: Run a single pass and exit
        container: Optional prebuilt container
    """
    setup_logging()
    container = container or build_container()
    interval = interval_seconds or container.settings.retry_worker_interval_seconds

    logger.info("payment_retry_worker_starting", interval_seconds=interval, run_once=run_once)

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("payment_retry_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while running:
            await run_payment_jobs(container)
            if run_once:
                break

            # Sleep in short steps so a shutdown signal is noticed promptly
            remaining = interval
            while remaining > 0 and running:
                step = min(remaining, 5)
                await asyncio.sleep(step)
                remaining -= step
    finally:
        await container.close()
        await close_db()
        logger.info("payment_retry_worker_stopped")


def main() -> None:
    parser = argparse.ArgumentParser(description="Payment retry worker")
    parser.add_argument("--interval", type=int, default=None, help="Seconds between passes")
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    args = parser.parse_args()

    asyncio.run(start_payment_retry_worker(interval_seconds=args.interval, run_once=args.once))


if __name__ == "__main__":
    main()
