"""
Approval Kernel - multi-step approval workflow engine.

Routes business requests (leave, claims, loans, cash replenishment, ...)
through an ordered, linear sequence of approvers with:
- Per-instance serialized transitions (row lock + version check)
- Snapshotted step lists (template edits never affect running instances)
- Append-only action ledger
- Transactional outbox for outbound events
"""

__version__ = "0.1.0"
