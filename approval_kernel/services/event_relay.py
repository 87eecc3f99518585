"""
EventRelay -- drains the approval outbox into the event bus.

Responsibility:
    After a transition commits, publish its outbox rows and mark them
    delivered.  Failed deliveries are retried with exponential backoff
    until ``max_attempts``; after that the row is left undelivered and
    logged as a dead letter.

Architecture position:
    Kernel > Services.  Owns its own short transactions through the
    session factory (it runs after the caller's commit, never inside it).

Invariants enforced:
    - At-least-once delivery: a row is marked delivered only after the bus
      accepted it.  A crash between publish and commit re-delivers; handlers
      dedupe on ``event_id``.
    - Concurrent relays do not publish the same row at once: rows are
      claimed with SELECT ... FOR UPDATE SKIP LOCKED (PostgreSQL).
    - Oldest events first.

Failure modes:
    - Handler failures are recorded on the row (attempts, last_error,
      next_attempt_at) and never raised to the caller.
    - Database errors while claiming or committing propagate after rollback.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy import or_, select
from sqlalchemy.orm import Session, sessionmaker

from approval_kernel.domain.clock import Clock, SystemClock
from approval_kernel.domain.events import EventEnvelope
from approval_kernel.logging_config import get_logger
from approval_kernel.models.outbox import ApprovalOutboxModel
from approval_kernel.services.event_bus import EventBus

logger = get_logger("services.event_relay")


@dataclass(frozen=True)
class RelayResult:
    delivered: int = 0
    failed: int = 0
    dead_lettered: int = 0

    @property
    def attempted(self) -> int:
        return self.delivered + self.failed


class EventRelay:
    """Publishes undelivered outbox rows."""

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        bus: EventBus,
        clock: Clock | None = None,
        batch_size: int = 100,
        max_attempts: int = 10,
        backoff_seconds: float = 30.0,
    ) -> None:
        self._session_factory = session_factory
        self._bus = bus
        self._clock = clock or SystemClock()
        self._batch_size = batch_size
        self._max_attempts = max_attempts
        self._backoff_seconds = backoff_seconds

    @property
    def bus(self) -> EventBus:
        return self._bus

    def dispatch_pending(self) -> RelayResult:
        """Publish one batch of due events."""
        session = self._session_factory()
        delivered = failed = dead = 0
        try:
            now = self._clock.now()
            rows = session.execute(
                select(ApprovalOutboxModel)
                .where(
                    ApprovalOutboxModel.delivered_at.is_(None),
                    ApprovalOutboxModel.attempts < self._max_attempts,
                    or_(
                        ApprovalOutboxModel.next_attempt_at.is_(None),
                        ApprovalOutboxModel.next_attempt_at <= now,
                    ),
                )
                .order_by(ApprovalOutboxModel.occurred_at)
                .limit(self._batch_size)
                .with_for_update(skip_locked=True)
            ).scalars().all()

            for row in rows:
                envelope = EventEnvelope(
                    event_id=row.event_id,
                    event_type=row.event_type,
                    instance_id=row.instance_id,
                    occurred_at=row.occurred_at,
                    payload=dict(row.payload),
                )
                try:
                    self._bus.publish(envelope)
                except Exception as exc:
                    failed += 1
                    row.attempts += 1
                    row.last_error = str(exc)[:2000]
                    row.next_attempt_at = now + timedelta(
                        seconds=self._backoff_seconds * (2 ** (row.attempts - 1))
                    )
                    if row.attempts >= self._max_attempts:
                        dead += 1
                        logger.error(
                            "approval_event_dead_lettered",
                            extra={
                                "event_id": str(row.event_id),
                                "event_type": row.event_type,
                                "attempts": row.attempts,
                            },
                        )
                    else:
                        logger.warning(
                            "approval_event_delivery_failed",
                            extra={
                                "event_id": str(row.event_id),
                                "event_type": row.event_type,
                                "attempts": row.attempts,
                                "next_attempt_at": row.next_attempt_at,
                            },
                        )
                    continue
                row.attempts += 1
                row.delivered_at = now
                row.last_error = None
                delivered += 1

            session.commit()
        except Exception:
            session.rollback()
            logger.exception("approval_relay_failed")
            raise
        finally:
            session.close()

        result = RelayResult(delivered=delivered, failed=failed, dead_lettered=dead)
        if result.attempted:
            logger.info(
                "approval_relay_dispatched",
                extra={
                    "delivered": delivered,
                    "failed": failed,
                    "dead_lettered": dead,
                },
            )
        return result

    def drain(self, max_batches: int = 100) -> RelayResult:
        """Dispatch batches until nothing is due or a batch delivers nothing."""
        delivered = failed = dead = 0
        for _ in range(max_batches):
            batch = self.dispatch_pending()
            delivered += batch.delivered
            failed += batch.failed
            dead += batch.dead_lettered
            if batch.delivered == 0:
                break
        return RelayResult(delivered=delivered, failed=failed, dead_lettered=dead)
