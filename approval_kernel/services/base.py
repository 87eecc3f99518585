"""
BaseService -- abstract base for all kernel write services.

Responsibility:
    Common constructor and session-handling contract.  Every concrete
    service receives a SQLAlchemy ``Session`` and persists through
    ``session.flush()`` -- never ``session.commit()``.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.

Invariants enforced:
    Transaction boundaries: services flush within the caller's transaction
    and never commit or roll back themselves.  The caller
    (ApprovalOrchestrator, ReconciliationScheduler, or a test) owns
    commit/rollback, so an instance change, its ledger row, and its outbox
    events land together or not at all.
"""

from abc import ABC

from sqlalchemy.orm import Session

from approval_kernel.domain.clock import Clock, SystemClock


class BaseService(ABC):
    """
    Abstract base class for kernel write services.

    Non-goals:
        - Does NOT manage transaction lifecycle (commit/rollback).
        - Does NOT provide read-model queries -- those belong in
          ``approval_kernel/selectors/``.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self.session = session
        self.clock = clock or SystemClock()
