"""
approval_batch -- Time-driven reconciliation of pending approvals.

Runs the periodic sweep that auto-approves steps whose timeout elapsed and
escalates steps that sat past their escalation threshold.  The sweep is
in-process and polling; it owns its own transactions.

Architecture:
    approval_batch/ is a top-level package.  Nothing in approval_kernel/
    imports from approval_batch.

Invariants:
    - At most one sweep runs at a time (process lock, plus a PostgreSQL
      advisory lock across processes).
    - Each pending instance is reconciled in its own transaction; one
      instance's failure does not stop the sweep.
    - All timestamps come from the injected Clock.
"""
