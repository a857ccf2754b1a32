"""
Domain errors for the project lifecycle engine.

Transition errors are local validation failures reported to the caller.
Scheduling errors are raised inside the per-service unit of work and turned
into SchedulingException rows by the run controller.
"""
from dataclasses import dataclass
from typing import List, Optional, Sequence


@dataclass(frozen=True)
class UnmetField:
    field_id: str
    field_name: str
    field_type: str
    reason: str

    def as_dict(self) -> dict:
        return {
            "field_id": self.field_id,
            "field_name": self.field_name,
            "field_type": self.field_type,
            "reason": self.reason,
        }


class StageTransitionError(Exception):
    """Base class for a rejected transition attempt."""

    code = "transition_rejected"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def as_detail(self) -> dict:
        return {"code": self.code, "message": self.message}


class InvalidStageError(StageTransitionError):
    code = "invalid_stage"


class ReasonNotAllowedError(StageTransitionError):
    code = "reason_not_allowed"


class ApprovalIncompleteError(StageTransitionError):
    code = "approval_incomplete"

    def __init__(self, approval_name: str, unmet: Sequence[UnmetField]):
        names = ", ".join(f.field_name for f in unmet)
        super().__init__(f"Approval '{approval_name}' is not satisfied: {names}")
        self.approval_name = approval_name
        self.unmet = list(unmet)

    def as_detail(self) -> dict:
        detail = super().as_detail()
        detail["approval"] = self.approval_name
        detail["unmet_fields"] = [f.as_dict() for f in self.unmet]
        return detail


class RequiredFieldMissingError(StageTransitionError):
    code = "required_field_missing"

    def __init__(self, missing: Sequence[UnmetField]):
        names = ", ".join(f.field_name for f in missing)
        super().__init__(f"Missing or invalid answers for: {names}")
        self.missing = list(missing)

    def as_detail(self) -> dict:
        detail = super().as_detail()
        detail["fields"] = [f.as_dict() for f in self.missing]
        return detail


class ConcurrentTransitionError(StageTransitionError):
    code = "concurrent_transition"


class ProjectInactiveError(StageTransitionError):
    code = "project_inactive"


class ApprovalConfigurationError(Exception):
    """An approval field violates its expected-value contract."""


class UnknownComparisonError(ApprovalConfigurationError):
    pass


class ConditionalLogicError(ValueError):
    """Malformed conditional logic payload."""


class SchedulingError(Exception):
    """Base class for per-service scheduling failures."""

    error_type = "unexpected_error"

    def __init__(self, message: str, error_type: Optional[str] = None, context: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        if error_type:
            self.error_type = error_type
        self.context = context or {}


class SchedulingConfigurationError(SchedulingError):
    error_type = "configuration_error"


class SchedulingComputationError(SchedulingError):
    error_type = "date_computation_failed"


class RunFatalError(Exception):
    """The run itself cannot proceed (e.g. the run log cannot be written)."""


__all__: List[str] = [
    "UnmetField",
    "StageTransitionError",
    "InvalidStageError",
    "ReasonNotAllowedError",
    "ApprovalIncompleteError",
    "RequiredFieldMissingError",
    "ConcurrentTransitionError",
    "ProjectInactiveError",
    "ApprovalConfigurationError",
    "UnknownComparisonError",
    "ConditionalLogicError",
    "SchedulingError",
    "SchedulingConfigurationError",
    "SchedulingComputationError",
    "RunFatalError",
]
