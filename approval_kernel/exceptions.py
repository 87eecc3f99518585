"""
Typed Exception Hierarchy for the Approval Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Approval decisions are surfaced to domain modules (leave, claims, loans) and
to API clients. Those callers must branch on the *kind* of failure, not on a
message string:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA (instance id, step order, role ...)

Example - WRONG way to handle errors:
    try:
        service.approve(instance_id, staff_id)
    except Exception as e:
        if "already" in str(e):   # FRAGILE - message might change
            refresh()

Example - RIGHT way (what this module enables):
    try:
        service.approve(instance_id, staff_id)
    except AlreadyProcessedError as e:
        api_response(code=e.code, status=e.status)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

All exceptions inherit from ApprovalEngineError:

    ApprovalEngineError (base)
    |
    +-- NotFoundError
    |   +-- FlowNotFoundError
    |   +-- StepNotFoundError
    |   +-- InstanceNotFoundError
    |   +-- StaffNotFoundError
    |
    +-- ApprovalStateError
    |   +-- AlreadyProcessedError
    |   +-- InvalidStepError
    |   +-- AwaitingResubmissionError
    |   +-- InvalidTransitionError
    |   +-- DuplicateInstanceError
    |
    +-- NotAuthorizedError
    |
    +-- FlowConfigurationError
    |   +-- NoMatchingFlowError
    |   +-- EmptyFlowError
    |   +-- DuplicateFlowCodeError
    |   +-- DuplicateStepOrderError
    |   +-- InvalidStepDefinitionError
    |   +-- FlowInUseError
    |
    +-- ApprovalValidationError
    |   +-- CommentRequiredError
    |   +-- DirectoryRequiredError
    |
    +-- ImmutabilityViolationError
    |
    +-- EventDeliveryError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                        | When Raised
----------------|-----------------------------|-----------------------------------------
Not found       | FLOW_NOT_FOUND              | Flow id / code doesn't exist
                | STEP_NOT_FOUND              | Step id doesn't exist
                | INSTANCE_NOT_FOUND          | Instance id doesn't exist
                | STAFF_NOT_FOUND             | Staff id unknown to the directory
----------------|-----------------------------|-----------------------------------------
State           | ALREADY_PROCESSED           | Instance terminal, or moved on (race)
                | INVALID_STEP                | current_step_order has no snapshot step
                | AWAITING_RESUBMISSION       | Instance returned for more info
                | INVALID_TRANSITION          | Transition not allowed from status
                | DUPLICATE_INSTANCE          | Target already has an open instance
----------------|-----------------------------|-----------------------------------------
Authorization   | NOT_AUTHORIZED              | Actor cannot act on the current step
----------------|-----------------------------|-----------------------------------------
Configuration   | NO_MATCHING_FLOW            | No active flow for target type
                | EMPTY_FLOW                  | Resolved flow has zero steps
                | DUPLICATE_FLOW_CODE         | Flow code already taken
                | DUPLICATE_STEP_ORDER        | step_order already used in flow
                | INVALID_STEP_DEFINITION     | Step fields inconsistent with type
                | FLOW_IN_USE                 | Flow has open instances
----------------|-----------------------------|-----------------------------------------
Validation      | COMMENT_REQUIRED            | reject / return without comment
----------------|-----------------------------|-----------------------------------------
Immutability    | IMMUTABILITY_VIOLATION      | Update/delete of a ledger row
----------------|-----------------------------|-----------------------------------------
Delivery        | EVENT_DELIVERY_FAILED       | One or more subscribers raised

===============================================================================
HANDLING PATTERNS
===============================================================================

1. NoMatchingFlowError / EmptyFlowError are NON-RETRYABLE. The initiating
   domain module decides whether to block its request or proceed without
   a workflow.

2. AlreadyProcessedError means "refresh and re-read": another approver (or
   the reconciliation sweep) got there first.

3. NotAuthorizedError is a permission failure. Never downgrade it to a
   silent no-op.
"""

from __future__ import annotations


class ApprovalEngineError(Exception):
    """
    Base exception for all approval kernel errors.

    All subclasses carry a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "APPROVAL_ENGINE_ERROR"


# Not-found exceptions


class NotFoundError(ApprovalEngineError):
    """Base exception for missing entities."""

    code: str = "NOT_FOUND"


class FlowNotFoundError(NotFoundError):
    """Flow with given id or code was not found."""

    code: str = "FLOW_NOT_FOUND"

    def __init__(self, flow_ref: str):
        self.flow_ref = flow_ref
        super().__init__(f"Approval flow not found: {flow_ref}")


class StepNotFoundError(NotFoundError):
    """Flow step with given id was not found."""

    code: str = "STEP_NOT_FOUND"

    def __init__(self, step_id: str):
        self.step_id = step_id
        super().__init__(f"Approval flow step not found: {step_id}")


class InstanceNotFoundError(NotFoundError):
    """Approval instance with given id was not found."""

    code: str = "INSTANCE_NOT_FOUND"

    def __init__(self, instance_id: str):
        self.instance_id = instance_id
        super().__init__(f"Approval instance not found: {instance_id}")


class StaffNotFoundError(NotFoundError):
    """Staff member is unknown to the staff directory."""

    code: str = "STAFF_NOT_FOUND"

    def __init__(self, staff_id: str):
        self.staff_id = staff_id
        super().__init__(f"Staff member not found: {staff_id}")


# State-machine exceptions


class ApprovalStateError(ApprovalEngineError):
    """Base exception for transitions that the instance state forbids."""

    code: str = "APPROVAL_STATE_ERROR"


class AlreadyProcessedError(ApprovalStateError):
    """
    Instance is terminal, or advanced past the step the caller acted on.

    Also raised to the loser of two concurrent transitions on the same
    instance.
    """

    code: str = "ALREADY_PROCESSED"

    def __init__(self, instance_id: str, status: str, detail: str | None = None):
        self.instance_id = instance_id
        self.status = status
        self.detail = detail
        message = f"Approval instance {instance_id} already processed (status={status})"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class InvalidStepError(ApprovalStateError):
    """current_step_order does not reference a step of the instance."""

    code: str = "INVALID_STEP"

    def __init__(self, instance_id: str, step_order: int | None):
        self.instance_id = instance_id
        self.step_order = step_order
        super().__init__(
            f"Approval instance {instance_id} has no step with order {step_order}"
        )


class AwaitingResubmissionError(ApprovalStateError):
    """Instance was returned for more information and not yet resumed."""

    code: str = "AWAITING_RESUBMISSION"

    def __init__(self, instance_id: str):
        self.instance_id = instance_id
        super().__init__(
            f"Approval instance {instance_id} is awaiting resubmission by the requester"
        )


class InvalidTransitionError(ApprovalStateError):
    """Requested transition is not allowed from the current status."""

    code: str = "INVALID_TRANSITION"

    def __init__(self, instance_id: str, from_status: str, action: str):
        self.instance_id = instance_id
        self.from_status = from_status
        self.action = action
        super().__init__(
            f"Cannot {action} approval instance {instance_id} in status {from_status}"
        )


class DuplicateInstanceError(ApprovalStateError):
    """The target request already has an open approval instance."""

    code: str = "DUPLICATE_INSTANCE"

    def __init__(self, target_type: str, target_id: str, existing_instance_id: str):
        self.target_type = target_type
        self.target_id = target_id
        self.existing_instance_id = existing_instance_id
        super().__init__(
            f"{target_type} {target_id} already has open approval instance "
            f"{existing_instance_id}"
        )


# Authorization


class NotAuthorizedError(ApprovalEngineError):
    """Actor is not authorized to act on the instance's current step."""

    code: str = "NOT_AUTHORIZED"

    def __init__(
        self,
        instance_id: str,
        actor_id: str,
        step_order: int | None = None,
        reason: str | None = None,
    ):
        self.instance_id = instance_id
        self.actor_id = actor_id
        self.step_order = step_order
        self.reason = reason
        message = (
            f"Staff {actor_id} is not authorized to act on approval instance "
            f"{instance_id} at step {step_order}"
        )
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


# Flow configuration exceptions


class FlowConfigurationError(ApprovalEngineError):
    """Base exception for flow catalog and initiation-time configuration errors."""

    code: str = "FLOW_CONFIGURATION_ERROR"


class NoMatchingFlowError(FlowConfigurationError):
    """No active flow exists for the requested target type."""

    code: str = "NO_MATCHING_FLOW"

    def __init__(self, target_type: str, flow_code: str | None = None):
        self.target_type = target_type
        self.flow_code = flow_code
        message = f"No active approval flow for target type {target_type}"
        if flow_code:
            message = f"{message} (requested code {flow_code})"
        super().__init__(message)


class EmptyFlowError(FlowConfigurationError):
    """Resolved flow has no steps."""

    code: str = "EMPTY_FLOW"

    def __init__(self, flow_code: str):
        self.flow_code = flow_code
        super().__init__(f"Approval flow {flow_code} has no steps")


class DuplicateFlowCodeError(FlowConfigurationError):
    """A flow with this code already exists."""

    code: str = "DUPLICATE_FLOW_CODE"

    def __init__(self, flow_code: str):
        self.flow_code = flow_code
        super().__init__(f"Approval flow code already exists: {flow_code}")


class DuplicateStepOrderError(FlowConfigurationError):
    """step_order is already used by another step of the flow."""

    code: str = "DUPLICATE_STEP_ORDER"

    def __init__(self, flow_code: str, step_order: int):
        self.flow_code = flow_code
        self.step_order = step_order
        super().__init__(
            f"Approval flow {flow_code} already has a step with order {step_order}"
        )


class InvalidStepDefinitionError(FlowConfigurationError):
    """Step fields are inconsistent with its approver type or timeouts."""

    code: str = "INVALID_STEP_DEFINITION"

    def __init__(self, step_name: str, errors: list[str]):
        self.step_name = step_name
        self.errors = errors
        super().__init__(
            f"Invalid approval step {step_name!r}: " + "; ".join(errors)
        )


class FlowInUseError(FlowConfigurationError):
    """Flow cannot be deleted while it has open instances."""

    code: str = "FLOW_IN_USE"

    def __init__(self, flow_code: str, open_instances: int):
        self.flow_code = flow_code
        self.open_instances = open_instances
        super().__init__(
            f"Approval flow {flow_code} has {open_instances} open instance(s)"
        )


# Input validation


class ApprovalValidationError(ApprovalEngineError):
    """Base exception for invalid operation input."""

    code: str = "APPROVAL_VALIDATION_ERROR"


class CommentRequiredError(ApprovalValidationError):
    """Operation requires a non-empty comment."""

    code: str = "COMMENT_REQUIRED"

    def __init__(self, action: str):
        self.action = action
        super().__init__(f"A comment is required to {action} an approval")


class DirectoryRequiredError(ApprovalValidationError):
    """Operation needs staff lookups but no StaffDirectory was supplied."""

    code: str = "DIRECTORY_REQUIRED"

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"{operation} requires a staff directory")


# Immutability


class ImmutabilityViolationError(ApprovalEngineError):
    """Attempted to modify or delete an append-only record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(
            f"Immutability violation on {entity_type} {entity_id}: {reason}"
        )


# Event delivery


class EventDeliveryError(ApprovalEngineError):
    """One or more subscribers failed to handle a published event."""

    code: str = "EVENT_DELIVERY_FAILED"

    def __init__(self, event_id: str, event_type: str, failures: list[str]):
        self.event_id = event_id
        self.event_type = event_type
        self.failures = failures
        super().__init__(
            f"Delivery of {event_type} event {event_id} failed for "
            f"{len(failures)} subscriber(s): " + "; ".join(failures)
        )
