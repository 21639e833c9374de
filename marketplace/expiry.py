"""Daily reconciliation of subscription expiry, grace periods and stale payments."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import Event, Lock, Thread
from typing import Callable, Dict, Optional

from marketplace.app.payments.service import PaymentService
from marketplace.app.subscriptions.service import SubscriptionManager

logger = logging.getLogger(__name__)

_BATCH_SIZE = 500


@dataclass
class ExpiryRunSummary:
    trigger: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    subscriptions_expired: int = 0
    grace_periods_expired: int = 0
    transactions_reaped: int = 0
    failures: int = 0

    def as_dict(self) -> Dict[str, object]:
        return {
            "trigger": self.trigger,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "subscriptions_expired": self.subscriptions_expired,
            "grace_periods_expired": self.grace_periods_expired,
            "transactions_reaped": self.transactions_reaped,
            "failures": self.failures,
        }


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _seconds_until(hour: int, minute: int = 0, *, now: Optional[datetime] = None) -> float:
    current = now or _now()
    target = current.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if target <= current:
        target += timedelta(days=1)
    return max((target - current).total_seconds(), 0.0)


class ExpiryScheduler:
    """Runs the three expiry phases, at most one run at a time per process.

    Phase 1 expires active subscriptions whose end date has passed, phase 2
    closes grace periods that have ended and phase 3 fails pending payments
    the gateway never picked up. Each record is handled independently so one
    bad row does not stop the batch.

    The run lock is process local. Several application instances would each
    run the job; every step is a compare-and-set so repeated runs are
    harmless.
    """

    def __init__(
        self,
        *,
        subscriptions: SubscriptionManager,
        payments: PaymentService,
        clock: Optional[Callable[[], datetime]] = None,
        batch_size: int = _BATCH_SIZE,
    ) -> None:
        self._subscriptions = subscriptions
        self._payments = payments
        self._clock = clock or _now
        self._batch_size = max(1, batch_size)
        self._run_lock = Lock()
        self._metrics_lock = Lock()
        self._metrics: Dict[str, object] = {}
        self.reset_metrics()

    def run_once(self, *, trigger: str = "scheduled", now: Optional[datetime] = None) -> Optional[ExpiryRunSummary]:
        """Execute one reconciliation pass.

        Returns ``None`` without doing anything when another run is already
        in progress.
        """

        if not self._run_lock.acquire(blocking=False):
            logger.warning("Subscription expiry run skipped: previous run still in progress", extra={"trigger": trigger})
            with self._metrics_lock:
                self._metrics["runs_skipped"] = int(self._metrics["runs_skipped"]) + 1
            return None

        try:
            current_time = now or self._clock()
            if current_time.tzinfo is None:
                current_time = current_time.replace(tzinfo=timezone.utc)
            summary = ExpiryRunSummary(trigger=trigger, started_at=current_time)
            with self._metrics_lock:
                self._metrics["last_run_at"] = current_time

            try:
                self._expire_active_subscriptions(current_time, summary)
                self._expire_grace_periods(current_time, summary)
                self._reap_stale_transactions(current_time, summary)
            except Exception as exc:
                self._record_failure(current_time, exc, summary)
                logger.exception("Subscription expiry run failed", extra={"trigger": trigger})
                raise

            summary.finished_at = self._clock()
            self._record_success(summary)
            logger.info("Subscription expiry run completed", extra=summary.as_dict())
            return summary
        finally:
            self._run_lock.release()

    def _expire_active_subscriptions(self, now: datetime, summary: ExpiryRunSummary) -> None:
        after: Optional[str] = None
        while True:
            batch = self._subscriptions.list_due_for_expiry(now, after=after, limit=self._batch_size)
            for subscription in batch:
                try:
                    if self._subscriptions.expire_subscription(subscription.subscription_id, now) is not None:
                        summary.subscriptions_expired += 1
                except Exception:
                    summary.failures += 1
                    logger.exception(
                        "Failed to expire subscription %s",
                        subscription.subscription_id,
                        extra={"user_id": subscription.user_id},
                    )
            if len(batch) < self._batch_size:
                return
            after = batch[-1].subscription_id

    def _expire_grace_periods(self, now: datetime, summary: ExpiryRunSummary) -> None:
        after: Optional[str] = None
        while True:
            batch = self._subscriptions.list_grace_expired_users(now, after=after, limit=self._batch_size)
            for user_id in batch:
                try:
                    if self._subscriptions.expire_grace_period(user_id, now) is not None:
                        summary.grace_periods_expired += 1
                except Exception:
                    summary.failures += 1
                    logger.exception("Failed to end grace period for user %s", user_id)
            if len(batch) < self._batch_size:
                return
            after = batch[-1]

    def _reap_stale_transactions(self, now: datetime, summary: ExpiryRunSummary) -> None:
        result = self._payments.reap_stale_transactions(now, batch_size=self._batch_size)
        summary.transactions_reaped = result.reaped
        summary.failures += result.failures

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------
    def _record_success(self, summary: ExpiryRunSummary) -> None:
        with self._metrics_lock:
            metrics = self._metrics
            metrics["runs"] = int(metrics["runs"]) + 1
            metrics["subscriptions_expired"] = int(metrics["subscriptions_expired"]) + summary.subscriptions_expired
            metrics["grace_periods_expired"] = int(metrics["grace_periods_expired"]) + summary.grace_periods_expired
            metrics["transactions_reaped"] = int(metrics["transactions_reaped"]) + summary.transactions_reaped
            metrics["failures"] = int(metrics["failures"]) + summary.failures
            metrics["last_success_at"] = summary.finished_at
            metrics["last_error"] = None
            metrics["last_summary"] = summary.as_dict()

    def _record_failure(self, failed_at: datetime, error: Exception, summary: ExpiryRunSummary) -> None:
        with self._metrics_lock:
            metrics = self._metrics
            metrics["runs"] = int(metrics["runs"]) + 1
            metrics["failures"] = int(metrics["failures"]) + summary.failures + 1
            metrics["last_error"] = f"{type(error).__name__}: {error}"
            metrics["last_error_at"] = failed_at

    def get_metrics(self) -> Dict[str, object]:
        with self._metrics_lock:
            snapshot = dict(self._metrics)
        for key in ("last_run_at", "last_success_at", "last_error_at"):
            value = snapshot.get(key)
            snapshot[key] = value.isoformat() if isinstance(value, datetime) else value
        return snapshot

    def reset_metrics(self) -> None:
        with self._metrics_lock:
            self._metrics.clear()
            self._metrics.update(
                {
                    "runs": 0,
                    "runs_skipped": 0,
                    "subscriptions_expired": 0,
                    "grace_periods_expired": 0,
                    "transactions_reaped": 0,
                    "failures": 0,
                    "last_run_at": None,
                    "last_success_at": None,
                    "last_error": None,
                    "last_error_at": None,
                    "last_summary": None,
                }
            )


class _ExpiryWorker(Thread):
    def __init__(self, scheduler: ExpiryScheduler, *, initial_delay: float, interval: float):
        super().__init__(daemon=True, name="subscription-expiry")
        self.scheduler = scheduler
        self._initial_delay = max(0.0, initial_delay)
        self._interval = max(1.0, interval)
        self._stop = Event()

    def stop(self) -> None:
        self._stop.set()

    def run(self) -> None:  # pragma: no cover - thread execution
        if self._stop.wait(self._initial_delay):
            return
        while not self._stop.is_set():
            try:
                self.scheduler.run_once(trigger="scheduled")
            except Exception:
                # Failures are logged and counted inside run_once; keep the schedule.
                pass
            if self._stop.wait(self._interval):
                break


_worker_lock = Lock()
_worker: Optional[_ExpiryWorker] = None


def start_expiry_scheduler(scheduler: ExpiryScheduler, *, hour: int = 0) -> None:
    """Start the daily worker thread. Calling it again while running is a no-op."""

    global _worker
    with _worker_lock:
        if _worker is not None:
            return
        delay = _seconds_until(hour)
        _worker = _ExpiryWorker(scheduler, initial_delay=delay, interval=24 * 60 * 60)
        _worker.start()
        logger.info(
            "Subscription expiry scheduler started",
            extra={"initial_delay_seconds": round(delay, 2), "hour_utc": hour},
        )


def shutdown_expiry_scheduler() -> None:
    global _worker
    with _worker_lock:
        worker = _worker
        _worker = None
        if worker is None:
            return
        worker.stop()
        worker.join(timeout=1.0)
        logger.info("Subscription expiry scheduler stopped")


__all__ = [
    "ExpiryRunSummary",
    "ExpiryScheduler",
    "shutdown_expiry_scheduler",
    "start_expiry_scheduler",
]
