"""Services for the approval kernel (write side)."""

from approval_kernel.services.action_ledger import ActionLedger
from approval_kernel.services.approval_orchestrator import ApprovalOrchestrator
from approval_kernel.services.approval_service import ApprovalService
from approval_kernel.services.event_bus import EventBus, InProcessEventBus
from approval_kernel.services.event_relay import EventRelay, RelayResult
from approval_kernel.services.flow_catalog import FlowCatalogService
from approval_kernel.services.outbox import EventOutbox

__all__ = [
    "ActionLedger",
    "ApprovalOrchestrator",
    "ApprovalService",
    "EventBus",
    "EventOutbox",
    "EventRelay",
    "FlowCatalogService",
    "InProcessEventBus",
    "RelayResult",
]
