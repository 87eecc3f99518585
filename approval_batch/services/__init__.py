"""approval_batch.services -- Reconciliation scheduler."""

from approval_batch.services.scheduler import ReconciliationScheduler

__all__ = ["ReconciliationScheduler"]
