"""Background scheduling for reconciliation sweeps."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from threading import Event, Lock, Thread
from typing import Callable, Dict, Optional, Sequence, Tuple

from entitlement_backend.app.services.packages import get_sweeper

logger = logging.getLogger(__name__)


class SweepJob(str, Enum):
    EXPIRY = "expiry"
    RENEWAL_ELIGIBILITY = "renewal_eligibility"
    RETENTION = "retention"


# (hour, minute, day_of_week) in UTC; day_of_week uses Monday=0.
EXPIRY_TIMES: Sequence[Tuple[int, int]] = ((5, 30), (17, 30))
RENEWAL_TIME: Tuple[int, int] = (6, 0)
RETENTION_TIME: Tuple[int, int, int] = (2, 0, 6)

_scheduler_lock = Lock()
_workers: Dict[str, "_SweepWorker"] = {}

_SWEEP_METRICS: Dict[str, Dict[str, object]] = {
    job.value: {
        "runs": 0,
        "failures": 0,
        "last_run_at": None,
        "last_success_at": None,
        "last_error": None,
        "last_summary": None,
    }
    for job in SweepJob
}
_metrics_lock = Lock()


def _record_run_start(job: SweepJob, started_at: datetime) -> None:
    with _metrics_lock:
        metrics = _SWEEP_METRICS[job.value]
        metrics["runs"] = int(metrics.get("runs", 0)) + 1
        metrics["last_run_at"] = started_at


def _record_run_success(job: SweepJob, completed_at: datetime, summary: Dict[str, int]) -> None:
    with _metrics_lock:
        metrics = _SWEEP_METRICS[job.value]
        metrics["last_success_at"] = completed_at
        metrics["last_error"] = None
        metrics["last_summary"] = dict(summary)


def _record_run_failure(job: SweepJob, error: Exception) -> None:
    with _metrics_lock:
        metrics = _SWEEP_METRICS[job.value]
        metrics["failures"] = int(metrics.get("failures", 0)) + 1
        metrics["last_error"] = f"{type(error).__name__}: {error}"


def _job_runner(job: SweepJob) -> Callable[[datetime], object]:
    sweeper = get_sweeper()
    if job == SweepJob.EXPIRY:
        return sweeper.sweep_expiry
    if job == SweepJob.RENEWAL_ELIGIBILITY:
        return sweeper.sweep_renewal_eligibility
    return sweeper.retention_cleanup


def run_sweep_job(job: SweepJob, *, now: Optional[datetime] = None) -> Dict[str, int]:
    current_time = now or datetime.now(timezone.utc)
    if current_time.tzinfo is None:
        current_time = current_time.replace(tzinfo=timezone.utc)

    _record_run_start(job, current_time)
    try:
        summary = _job_runner(job)(current_time).as_dict()
    except Exception as exc:
        _record_run_failure(job, exc)
        logger.exception("Sweep job failed", extra={"job": job.value})
        raise
    _record_run_success(job, current_time, summary)
    logger.info("Sweep job completed", extra={"job": job.value, **summary})
    return summary


class _SweepWorker(Thread):
    def __init__(
        self,
        job: SweepJob,
        *,
        next_delay: Callable[[], float],
        run_immediately: bool = False,
    ):
        super().__init__(daemon=True, name=f"sweep-{job.value}")
        self.job = job
        self._next_delay = next_delay
        self._run_immediately = run_immediately
        self._stop_event = Event()

    def stop(self) -> None:
        self._stop_event.set()

    def run(self) -> None:  # pragma: no cover - thread execution
        if self._run_immediately:
            self._run_once()
        while not self._stop_event.wait(max(1.0, self._next_delay())):
            self._run_once()

    def _run_once(self) -> None:  # pragma: no cover - thread execution
        try:
            run_sweep_job(self.job)
        except Exception:
            logger.warning("Sweep job %s will retry at its next slot", self.job.value)


def _seconds_until(
    hour: int,
    minute: int = 0,
    day_of_week: Optional[int] = None,
    *,
    now: Optional[datetime] = None,
) -> float:
    now = now or datetime.now(timezone.utc)
    target = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if day_of_week is None:
        if target <= now:
            target += timedelta(days=1)
    else:
        days_ahead = (day_of_week - target.weekday()) % 7
        if days_ahead == 0 and target <= now:
            days_ahead = 7
        target += timedelta(days=days_ahead)
    return max((target - now).total_seconds(), 0.0)


def _seconds_until_next_expiry(*, now: Optional[datetime] = None) -> float:
    return min(_seconds_until(hour, minute, now=now) for hour, minute in EXPIRY_TIMES)


def _seconds_until_next_renewal(*, now: Optional[datetime] = None) -> float:
    return _seconds_until(*RENEWAL_TIME, now=now)


def _seconds_until_next_retention(*, now: Optional[datetime] = None) -> float:
    hour, minute, day_of_week = RETENTION_TIME
    return _seconds_until(hour, minute, day_of_week, now=now)


def start_sweep_scheduler() -> None:
    with _scheduler_lock:
        if _workers:
            return
        _workers[SweepJob.EXPIRY.value] = _SweepWorker(
            SweepJob.EXPIRY,
            next_delay=_seconds_until_next_expiry,
            run_immediately=True,
        )
        _workers[SweepJob.RENEWAL_ELIGIBILITY.value] = _SweepWorker(
            SweepJob.RENEWAL_ELIGIBILITY,
            next_delay=_seconds_until_next_renewal,
        )
        _workers[SweepJob.RETENTION.value] = _SweepWorker(
            SweepJob.RETENTION,
            next_delay=_seconds_until_next_retention,
        )
        for worker in _workers.values():
            worker.start()
        logger.info(
            "Sweep scheduler started",
            extra={
                "expiry_delay_seconds": round(_seconds_until_next_expiry(), 2),
                "renewal_delay_seconds": round(_seconds_until_next_renewal(), 2),
                "retention_delay_seconds": round(_seconds_until_next_retention(), 2),
            },
        )


def shutdown_sweep_scheduler() -> None:
    with _scheduler_lock:
        workers = list(_workers.values())
        for worker in workers:
            worker.stop()
        for worker in workers:
            worker.join(timeout=1.0)
        _workers.clear()
        logger.info("Sweep scheduler stopped")


def get_sweep_metrics() -> Dict[str, Dict[str, object]]:
    with _metrics_lock:
        snapshot: Dict[str, Dict[str, object]] = {}
        for key, value in _SWEEP_METRICS.items():
            snapshot[key] = {
                **value,
                "last_run_at": value["last_run_at"].isoformat() if value.get("last_run_at") else None,
                "last_success_at": value["last_success_at"].isoformat() if value.get("last_success_at") else None,
                "last_summary": dict(value["last_summary"]) if value.get("last_summary") else None,
            }
        return snapshot


def _reset_metrics_for_testing() -> None:  # pragma: no cover - used in tests only
    with _metrics_lock:
        for metrics in _SWEEP_METRICS.values():
            metrics.update(
                {
                    "runs": 0,
                    "failures": 0,
                    "last_run_at": None,
                    "last_success_at": None,
                    "last_error": None,
                    "last_summary": None,
                }
            )


__all__ = [
    "SweepJob",
    "get_sweep_metrics",
    "run_sweep_job",
    "shutdown_sweep_scheduler",
    "start_sweep_scheduler",
]
