import argparse
import asyncio
import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone

from spotbook.domain.bookings.service import BookingEngine
from spotbook.infra.logging import clear_log_context, configure_logging, update_log_context
from spotbook.infra.metrics import configure_metrics, metrics
from spotbook.infra.tracing import configure_tracing
from spotbook.jobs import booking_expiry, overstay_monitor
from spotbook.services import build_app_services
from spotbook.settings import settings

logger = logging.getLogger(__name__)

JobRunner = Callable[[BookingEngine], Awaitable[dict[str, int]]]

JOBS: dict[str, JobRunner] = {
    "booking-expiry": booking_expiry.expire_held_bookings,
    "approval-reminders": booking_expiry.send_approval_reminders,
    "overstay-monitor": overstay_monitor.run_overstay_monitor,
}


def _job_runner(name: str) -> JobRunner:
    try:
        return JOBS[name]
    except KeyError:
        raise ValueError(f"unknown_job:{name}") from None


async def _run_job(name: str, engine: BookingEngine, runner: JobRunner) -> dict[str, int]:
    update_log_context(job=name)
    try:
        result = await runner(engine)
        logger.info("job_complete", extra={"extra": {"job": name, **result}})
        for outcome, count in result.items():
            metrics.record_job_processed(name, outcome, count)
        metrics.record_job_success(name, datetime.now(tz=timezone.utc).timestamp())
        return result
    finally:
        clear_log_context()


async def run_once(engine: BookingEngine, job_names: list[str]) -> dict[str, dict[str, int]]:
    results: dict[str, dict[str, int]] = {}
    for name in job_names:
        runner = _job_runner(name)
        try:
            results[name] = await _run_job(name, engine, runner)
        except Exception as exc:  # noqa: BLE001
            metrics.record_job_error(name, type(exc).__name__)
            logger.warning("job_failed", extra={"extra": {"job": name, "reason": type(exc).__name__}})
        metrics.record_job_heartbeat(name)
    return results


async def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Run booking lifecycle jobs")
    parser.add_argument("--job", action="append", dest="jobs", choices=sorted(JOBS), help="Job name to run")
    parser.add_argument(
        "--interval",
        type=int,
        default=settings.job_interval_seconds,
        help="Seconds between loops when not using --once",
    )
    parser.add_argument("--once", action="store_true", help="Run jobs once and exit")
    args = parser.parse_args(argv)

    configure_logging()
    configure_tracing(settings)
    configure_metrics(settings.metrics_enabled)
    services = build_app_services(settings, metrics=metrics)
    job_names = args.jobs or list(JOBS)

    while True:
        await run_once(services.engine, job_names)
        if args.once:
            await services.notifier.drain()
            break
        await asyncio.sleep(max(args.interval, 1))


if __name__ == "__main__":
    asyncio.run(main())
