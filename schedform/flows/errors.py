"""
Exceptions for the flow engine.
"""

from typing import Optional, Sequence


class FlowError(Exception):
    """Base exception for flow operations that callers can recover from."""

    status_code = 400

    def __init__(self, message: str, *, flow_id: Optional[str] = None):
        super().__init__(message)
        self.flow_id = flow_id

    @property
    def code(self) -> str:
        return type(self).__name__


class FlowNotFound(FlowError):
    status_code = 404

    def __init__(self, flow_id: str):
        super().__init__(f"Flow {flow_id} not found", flow_id=flow_id)


class InvalidTransition(FlowError):
    """Raised when the requested status is not reachable from the current one."""

    status_code = 409

    def __init__(self, flow_id: str, current: str, requested: str, message: Optional[str] = None):
        super().__init__(
            message or f"Cannot move flow {flow_id} from '{current}' to '{requested}'",
            flow_id=flow_id,
        )
        self.current = current
        self.requested = requested


class TransitionPreconditionFailed(InvalidTransition):
    """Raised when an edge exists but the flow does not satisfy its requirements."""


class ApprovalRequired(TransitionPreconditionFailed):
    pass


class VerificationRequired(TransitionPreconditionFailed):
    pass


class FlowTerminated(FlowError):
    status_code = 409

    def __init__(self, flow_id: str, current: str, requested: Optional[str] = None):
        super().__init__(f"Flow {flow_id} is terminated in '{current}'", flow_id=flow_id)
        self.current = current
        self.requested = requested


class ConcurrentModification(FlowError):
    status_code = 409

    def __init__(self, flow_id: str, expected_version: Optional[int] = None):
        super().__init__(
            f"Flow {flow_id} was modified concurrently; re-read and retry",
            flow_id=flow_id,
        )
        self.expected_version = expected_version


class SlotUnavailable(FlowError):
    status_code = 409

    def __init__(self, slot_id: str, reason: str = "slot is fully booked", *, flow_id: Optional[str] = None):
        super().__init__(f"Slot {slot_id} unavailable: {reason}", flow_id=flow_id)
        self.slot_id = slot_id
        self.reason = reason


class ApprovalNotAuthorized(FlowError):
    status_code = 403


class ApprovalNotPending(FlowError):
    """Raised when approving a flow that is not waiting on an operator."""

    status_code = 409


class FormNotFound(FlowError):
    status_code = 404

    def __init__(self, form_id: str):
        super().__init__(f"Form {form_id} not found")
        self.form_id = form_id


class FormInUse(FlowError):
    status_code = 409

    def __init__(self, form_id: str):
        super().__init__(f"Form {form_id} has conversational flows and cannot be deleted")
        self.form_id = form_id


class UnknownQuestion(FlowError):
    """Raised when submitted answers reference questions outside the flow's form."""

    status_code = 422

    def __init__(self, flow_id: str, question_ids: Sequence[str]):
        super().__init__(
            f"Flow {flow_id} received answers for unknown questions: {', '.join(question_ids)}",
            flow_id=flow_id,
        )
        self.question_ids = list(question_ids)


class OracleError(Exception):
    """Retryable failure of the qualification oracle."""


class OracleTimeout(OracleError):
    pass


class OracleFailure(OracleError):
    pass