"""
Background trigger for forwarding reconciliation.

Runs inside the API process (started from the app's startup hook) or
standalone:

    python -m ooo_forwarding.reconcile_worker

Every tick calls the same reconciliation pass as the internal cron endpoint.
"""

import asyncio
import contextlib
import logging

from ooo_forwarding.core.config import settings
from ooo_forwarding.db.session import SessionLocal
from ooo_forwarding.services.mail_rule_gateway import get_mail_rule_gateway
from ooo_forwarding.services.reconciler_service import ReconcileResult, run_reconciliation

logger = logging.getLogger(__name__)

_loop_task: asyncio.Task | None = None


async def reconcile_once(trigger: str = "interval") -> ReconcileResult:
    """Run one pass with a fresh session."""
    gateway = get_mail_rule_gateway()
    with SessionLocal() as db:
        return await run_reconciliation(db, gateway, trigger=trigger)


async def reconcile_loop(
    interval_seconds: int | None = None,
    startup_delay_seconds: int | None = None,
) -> None:
    """Run reconciliation forever on a fixed interval."""
    interval = interval_seconds or settings.RECONCILE_INTERVAL_SECONDS
    delay = (
        settings.RECONCILE_STARTUP_DELAY_SECONDS
        if startup_delay_seconds is None
        else startup_delay_seconds
    )
    logger.info(f"Forwarding reconciler starting (every {interval}s)")

    if delay:
        await asyncio.sleep(delay)

    while True:
        try:
            await reconcile_once("interval")
        except Exception as e:
            logger.error("Forwarding reconciliation pass failed: %s", type(e).__name__, exc_info=e)

        await asyncio.sleep(interval)


def start_reconcile_loop() -> asyncio.Task | None:
    """Start the interval loop on the running event loop (idempotent)."""
    global _loop_task
    if not settings.RECONCILE_LOOP_ENABLED:
        logger.info("Forwarding reconciler loop disabled")
        return None
    if _loop_task is None or _loop_task.done():
        _loop_task = asyncio.create_task(reconcile_loop())
    return _loop_task


async def stop_reconcile_loop() -> None:
    global _loop_task
    if _loop_task:
        _loop_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await _loop_task
        _loop_task = None


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    try:
        asyncio.run(reconcile_loop())
    except KeyboardInterrupt:
        logger.info("Forwarding reconciler stopped")


if __name__ == "__main__":
    main()
