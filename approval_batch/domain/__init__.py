"""approval_batch.domain -- Pure result types for the reconciliation sweep."""

from approval_batch.domain.types import SweepResult

__all__ = ["SweepResult"]
