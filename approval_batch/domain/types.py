"""
approval_batch.domain.types -- Frozen result of one reconciliation sweep.

ZERO I/O.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID


@dataclass(frozen=True)
class SweepResult:
    """Counts from one sweep.

    ``skipped`` is True when another sweep was already running and this
    call did nothing.
    """

    sweep_id: UUID
    started_at: datetime
    examined: int = 0
    auto_approved: int = 0
    escalated: int = 0
    failed: int = 0
    skipped: bool = False
    failed_instance_ids: tuple[UUID, ...] = ()
    completed_at: datetime | None = None

    @property
    def changed(self) -> int:
        return self.auto_approved + self.escalated
