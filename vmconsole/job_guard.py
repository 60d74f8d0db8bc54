"""Overlap detection and run metrics for the billing batch jobs."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from threading import Lock
from typing import Any, Callable, Dict, Iterator, Optional

logger = logging.getLogger(__name__)

JOB_DAILY_SNAPSHOTS = "daily_snapshots"
JOB_MONTHLY_INVOICES = "monthly_invoices"
JOB_SUBSCRIPTION_CHARGES = "subscription_charges"

# Advisory lock keys: (namespace, job key) pairs for pg_try_advisory_lock(int, int).
_ADVISORY_NAMESPACE = 48_211
_ADVISORY_KEYS = {
    JOB_DAILY_SNAPSHOTS: 1,
    JOB_MONTHLY_INVOICES: 2,
    JOB_SUBSCRIPTION_CHARGES: 3,
}

_job_locks: Dict[str, Lock] = {name: Lock() for name in _ADVISORY_KEYS}


def _empty_metrics() -> Dict[str, object]:
    return {
        "runs": 0,
        "processed": 0,
        "failures": 0,
        "overlaps": 0,
        "last_run_at": None,
        "last_success_at": None,
        "last_error": None,
    }


_JOB_METRICS: Dict[str, Dict[str, object]] = {name: _empty_metrics() for name in _ADVISORY_KEYS}
_metrics_lock = Lock()


def record_job_start(job_name: str, started_at: datetime) -> None:
    with _metrics_lock:
        metrics = _JOB_METRICS[job_name]
        metrics["runs"] = int(metrics.get("runs", 0)) + 1
        metrics["last_run_at"] = started_at


def record_job_success(job_name: str, completed_at: datetime, *, processed: int, failed: int) -> None:
    with _metrics_lock:
        metrics = _JOB_METRICS[job_name]
        metrics["processed"] = int(metrics.get("processed", 0)) + processed
        metrics["failures"] = int(metrics.get("failures", 0)) + failed
        metrics["last_success_at"] = completed_at
        metrics["last_error"] = None


def record_job_failure(job_name: str, error: Exception) -> None:
    with _metrics_lock:
        metrics = _JOB_METRICS[job_name]
        metrics["failures"] = int(metrics.get("failures", 0)) + 1
        metrics["last_error"] = f"{type(error).__name__}: {error}"


def record_job_overlap(job_name: str) -> None:
    with _metrics_lock:
        metrics = _JOB_METRICS[job_name]
        metrics["overlaps"] = int(metrics.get("overlaps", 0)) + 1


def get_job_metrics() -> Dict[str, Dict[str, object]]:
    with _metrics_lock:
        snapshot: Dict[str, Dict[str, object]] = {}
        for key, value in _JOB_METRICS.items():
            snapshot[key] = {
                **value,
                "last_run_at": value["last_run_at"].isoformat() if value.get("last_run_at") else None,
                "last_success_at": value["last_success_at"].isoformat() if value.get("last_success_at") else None,
            }
        return snapshot


def _reset_metrics_for_testing() -> None:  # pragma: no cover - used in tests only
    with _metrics_lock:
        for metrics in _JOB_METRICS.values():
            metrics.update(_empty_metrics())


@dataclass
class JobGuard:
    """Ensures a batch job never runs twice at once.

    An in-process lock covers threads of this host; a PostgreSQL session
    advisory lock covers other hosts when a connection factory is configured.
    """

    conn_factory: Optional[Callable[[], Any]] = None
    use_advisory_locks: bool = True

    @contextmanager
    def hold(self, job_name: str) -> Iterator[bool]:
        """Yield ``True`` when the job slot was acquired, ``False`` on overlap."""

        if job_name not in _job_locks:
            raise ValueError(f"Unknown job: {job_name}")

        local_lock = _job_locks[job_name]
        if not local_lock.acquire(blocking=False):
            record_job_overlap(job_name)
            logger.warning("Job already running in this process", extra={"job": job_name})
            yield False
            return

        try:
            if not self.use_advisory_locks or self.conn_factory is None:
                yield True
                return

            with self._advisory_lock(job_name) as acquired:
                if not acquired:
                    record_job_overlap(job_name)
                    logger.warning("Job already running on another host", extra={"job": job_name})
                yield acquired
        finally:
            local_lock.release()

    @contextmanager
    def _advisory_lock(self, job_name: str) -> Iterator[bool]:
        key = (_ADVISORY_NAMESPACE, _ADVISORY_KEYS[job_name])
        connection = self.conn_factory()
        try:
            connection.autocommit = True
            with connection.cursor() as cursor:
                cursor.execute("SELECT pg_try_advisory_lock(%s, %s)", key)
                row = cursor.fetchone()
            acquired = bool(row and row[0])
            if not acquired:
                yield False
                return
            try:
                yield True
            finally:
                with connection.cursor() as cursor:
                    cursor.execute("SELECT pg_advisory_unlock(%s, %s)", key)
        finally:
            connection.close()


__all__ = [
    "JOB_DAILY_SNAPSHOTS",
    "JOB_MONTHLY_INVOICES",
    "JOB_SUBSCRIPTION_CHARGES",
    "JobGuard",
    "get_job_metrics",
    "record_job_failure",
    "record_job_start",
    "record_job_success",
]
