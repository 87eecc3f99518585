"""ORM models for the approval kernel."""

from approval_kernel.models.action import ApprovalActionModel
from approval_kernel.models.flow import ApprovalFlowModel, ApprovalFlowStepModel
from approval_kernel.models.instance import (
    ApprovalInstanceModel,
    ApprovalInstanceStepModel,
)
from approval_kernel.models.outbox import ApprovalOutboxModel

__all__ = [
    "ApprovalActionModel",
    "ApprovalFlowModel",
    "ApprovalFlowStepModel",
    "ApprovalInstanceModel",
    "ApprovalInstanceStepModel",
    "ApprovalOutboxModel",
]
