"""Exception hierarchy for the lead automation core."""

from __future__ import annotations


class LeadflowError(Exception):
    """Base class for all leadflow errors."""


class InvalidWorkflowDefinition(LeadflowError):
    """Raised when a workflow document fails validation at creation time."""


class WorkflowNotFound(LeadflowError):
    pass


class WorkflowInactive(LeadflowError):
    pass


class WorkflowLocked(LeadflowError):
    """Raised when editing a workflow that still has active enrollments."""


class EnrollmentNotFound(LeadflowError):
    pass


class LeadNotFound(LeadflowError):
    pass


class InvalidTriggerConfiguration(LeadflowError):
    """Raised when a stage trigger is malformed or conflicts with siblings."""


class ActionFailed(LeadflowError):
    """Raised by action handlers. ``retryable`` controls scheduler retries."""

    def __init__(self, message: str, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class ChannelDeliveryError(LeadflowError):
    """Raised when an outbound channel sender reports a failure."""

    def __init__(self, channel: str, message: str) -> None:
        super().__init__(f"{channel}: {message}")
        self.channel = channel
