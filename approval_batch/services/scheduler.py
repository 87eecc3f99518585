"""
ReconciliationScheduler -- In-process polling sweep over pending approvals.

Contract:
    Every ``interval_seconds`` lists the pending instances and runs
    ``ApprovalService.apply_timeouts`` on each, one transaction per
    instance.  After the sweep, drains the event relay so the resulting
    ``completed`` / ``step_pending`` / ``escalated`` events go out.

Architecture: approval_batch/services.  Uses approval_kernel services and
    selectors; nothing in the kernel imports from here.

Invariants enforced:
    - Non-overlapping sweeps: a process-local non-blocking lock, and on
      PostgreSQL a session-level advisory lock so only one process sweeps.
      A sweep that cannot take the lock returns ``skipped=True``.
    - Per-instance failure isolation: an exception while reconciling one
      instance rolls back that instance only, is logged, and the sweep
      continues.
    - Escalation idempotency lives in the ledger (ApprovalService), so a
      crashed or repeated sweep never escalates a step twice.
    - All timestamps from the injected Clock.
    - Graceful shutdown: ``stop()`` is honoured between instances.
"""

from __future__ import annotations

import threading
from dataclasses import replace
from typing import Callable
from uuid import UUID, uuid4

from sqlalchemy import text
from sqlalchemy.orm import Session

from approval_kernel.db.engine import is_postgres
from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.domain.directory import StaffDirectory
from approval_kernel.domain.timeouts import TimeoutDecision
from approval_kernel.logging_config import LogContext, get_logger
from approval_kernel.selectors.approval_selector import ApprovalSelector
from approval_kernel.services.approval_service import ApprovalService
from approval_kernel.services.event_relay import EventRelay

from approval_batch.domain.types import SweepResult

logger = get_logger("batch.scheduler")

# Arbitrary constant shared by every process sweeping the same database.
SWEEP_ADVISORY_LOCK_KEY = 0x41505052


class ReconciliationScheduler:
    """Periodic auto-approve / escalation sweep.

    Contract:
        - ``sweep()`` runs one reconciliation pass and returns a SweepResult.
        - ``tick()`` is ``sweep()`` that never raises (for the loop).
        - ``start()`` / ``stop()`` for background thread operation.

    Non-goals:
        - NOT a distributed job queue; cross-process exclusion relies on
          the PostgreSQL advisory lock only.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        directory: StaffDirectory,
        clock: Clock | None = None,
        interval_seconds: float = 1800,
        relay: EventRelay | None = None,
    ):
        self._session_factory = session_factory
        self._directory = directory
        self._clock = clock or SystemClock()
        self._interval = interval_seconds
        self._relay = relay
        self._sweep_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def sweep(self) -> SweepResult:
        """Reconcile every pending instance once."""
        sweep_id = uuid4()
        started_at = self._clock.now()
        if not self._sweep_lock.acquire(blocking=False):
            logger.info("sweep_skipped_already_running", extra={"sweep_id": str(sweep_id)})
            return SweepResult(sweep_id=sweep_id, started_at=started_at, skipped=True)
        try:
            with LogContext.bind(sweep_id=sweep_id):
                return self._sweep_exclusive(sweep_id, started_at)
        finally:
            self._sweep_lock.release()

    def tick(self) -> SweepResult | None:
        """Run one sweep; log and swallow failures so the loop keeps going."""
        try:
            return self.sweep()
        except Exception:
            logger.exception("sweep_failed")
            return None

    def start(self) -> None:
        """Start the scheduler in a background thread."""
        if self._thread is not None and self._thread.is_alive():
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop,
            name="approval-reconciliation",
            daemon=True,
        )
        self._thread.start()
        logger.info("scheduler_started", extra={"interval_seconds": self._interval})

    def stop(self, timeout: float = 30.0) -> None:
        """Signal stop and wait for the current sweep to finish."""
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        logger.info("scheduler_stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            self.tick()
            self._stop_event.wait(timeout=self._interval)

    def _sweep_exclusive(self, sweep_id: UUID, started_at) -> SweepResult:
        lock_session = self._session_factory()
        try:
            if not self._try_advisory_lock(lock_session):
                logger.info("sweep_skipped_locked_elsewhere")
                return SweepResult(sweep_id=sweep_id, started_at=started_at, skipped=True)
            try:
                result = self._reconcile_all(sweep_id, started_at)
            finally:
                self._release_advisory_lock(lock_session)
        finally:
            lock_session.close()

        if self._relay is not None:
            try:
                self._relay.drain()
            except Exception:
                logger.exception("sweep_relay_failed")

        logger.info(
            "sweep_completed",
            extra={
                "examined": result.examined,
                "auto_approved": result.auto_approved,
                "escalated": result.escalated,
                "failed": result.failed,
            },
        )
        return result

    def _reconcile_all(self, sweep_id: UUID, started_at) -> SweepResult:
        session = self._session_factory()
        try:
            instance_ids = ApprovalSelector(session).pending_instance_ids()
        finally:
            session.close()

        logger.info("sweep_started", extra={"pending": len(instance_ids)})
        result = SweepResult(sweep_id=sweep_id, started_at=started_at)
        failed_ids: list[UUID] = []
        auto_approved = escalated = examined = 0

        for instance_id in instance_ids:
            if self._stop_event.is_set():
                logger.info("sweep_interrupted", extra={"examined": examined})
                break
            examined += 1
            decision = self._reconcile_one(instance_id)
            if decision is None:
                failed_ids.append(instance_id)
            elif decision == TimeoutDecision.AUTO_APPROVE:
                auto_approved += 1
            elif decision == TimeoutDecision.ESCALATE:
                escalated += 1

        return replace(
            result,
            examined=examined,
            auto_approved=auto_approved,
            escalated=escalated,
            failed=len(failed_ids),
            failed_instance_ids=tuple(failed_ids),
            completed_at=self._clock.now(),
        )

    def _reconcile_one(self, instance_id: UUID) -> TimeoutDecision | None:
        """Apply timeouts to one instance in its own transaction.

        Returns None when reconciliation failed.
        """
        session = self._session_factory()
        try:
            with LogContext.bind(instance_id=instance_id):
                service = ApprovalService(session, self._directory, self._clock)
                outcome = service.apply_timeouts(instance_id)
                session.commit()
                return outcome.decision
        except Exception:
            session.rollback()
            logger.exception(
                "sweep_instance_failed",
                extra={"instance_id": str(instance_id)},
            )
            return None
        finally:
            session.close()

    @staticmethod
    def _try_advisory_lock(session: Session) -> bool:
        if not is_postgres(session.get_bind()):
            return True
        return bool(session.execute(
            text("SELECT pg_try_advisory_lock(:key)"),
            {"key": SWEEP_ADVISORY_LOCK_KEY},
        ).scalar())

    @staticmethod
    def _release_advisory_lock(session: Session) -> None:
        if not is_postgres(session.get_bind()):
            return
        session.execute(
            text("SELECT pg_advisory_unlock(:key)"),
            {"key": SWEEP_ADVISORY_LOCK_KEY},
        )
        session.commit()
