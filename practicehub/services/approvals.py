"""
Stage approval evaluation.

Evaluates a StageApproval's fields against a project's answers and reports
which fields are unmet. The evaluator itself never touches the database;
loading and persisting responses live in the helpers at the bottom.
"""
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from sqlalchemy.orm import Session

from ..models.models import COMPARISON_TYPES, DATE_COMPARISON_TYPES, FIELD_TYPES, StageApprovalField, StageApprovalResponse
from .conditional_logic import is_empty_answer, is_visible
from .errors import ApprovalConfigurationError, UnknownComparisonError, UnmetField


VALUE_COLUMNS: Dict[str, str] = {
    "boolean": "value_boolean",
    "number": "value_number",
    "short_text": "value_short_text",
    "long_text": "value_long_text",
    "single_select": "value_single_select",
    "multi_select": "value_multi_select",
    "date": "value_date",
}


@dataclass
class ApprovalResult:
    passed: bool
    unmet: List[UnmetField] = field(default_factory=list)


def coerce_answer(field_type: str, raw: Any) -> Any:
    """Convert a submitted answer into the Python value stored for ``field_type``.

    Returns None for empty answers. Raises ValueError when the value cannot
    represent the field type.
    """
    if raw is None:
        return None
    if field_type == "boolean":
        if isinstance(raw, bool):
            return raw
        if isinstance(raw, str) and raw.strip().lower() in ("true", "false"):
            return raw.strip().lower() == "true"
        raise ValueError("expected a boolean")
    if field_type == "number":
        if isinstance(raw, bool):
            raise ValueError("expected a number")
        if isinstance(raw, (int, float)):
            return float(raw)
        if isinstance(raw, str):
            if not raw.strip():
                return None
            try:
                return float(raw)
            except ValueError:
                raise ValueError("expected a number")
        raise ValueError("expected a number")
    if field_type in ("short_text", "long_text", "single_select"):
        if not isinstance(raw, str):
            raise ValueError("expected text")
        return raw.strip() or None
    if field_type == "multi_select":
        if isinstance(raw, str):
            raw = [raw]
        if not isinstance(raw, (list, tuple)):
            raise ValueError("expected a list of options")
        values = [str(v).strip() for v in raw if v is not None and str(v).strip()]
        return values or None
    if field_type == "date":
        if isinstance(raw, datetime):
            return raw.date()
        if isinstance(raw, date):
            return raw
        if isinstance(raw, str):
            if not raw.strip():
                return None
            try:
                return date.fromisoformat(raw.strip()[:10])
            except ValueError:
                raise ValueError("expected an ISO date")
        raise ValueError("expected an ISO date")
    raise ValueError(f"unsupported field type '{field_type}'")


def has_expectation(f: StageApprovalField) -> bool:
    """True when the field carries an expected-value contract beyond presence."""
    if f.field_type in ("boolean", "number"):
        return True
    if f.field_type in ("single_select", "multi_select"):
        return bool(f.expected_values)
    if f.field_type == "date":
        return f.date_comparison_type is not None
    return False


def validate_field_contract(f: StageApprovalField) -> None:
    """Raise ApprovalConfigurationError if the field's expected-value metadata is inconsistent."""
    label = f"Approval field '{f.field_name}'"
    if f.field_type not in FIELD_TYPES:
        raise ApprovalConfigurationError(f"{label} has unknown type '{f.field_type}'")

    if f.field_type == "boolean":
        if f.expected_value_boolean is None:
            raise ApprovalConfigurationError(f"{label} must define an expected boolean value")
    elif f.field_type == "number":
        if f.comparison_type is None or f.expected_value_number is None:
            raise ApprovalConfigurationError(f"{label} must define a comparison type and expected number")
        if f.comparison_type not in COMPARISON_TYPES:
            raise UnknownComparisonError(f"{label} has unknown comparison type '{f.comparison_type}'")
    elif f.field_type in ("single_select", "multi_select"):
        if not f.options:
            raise ApprovalConfigurationError(f"{label} must define at least one option")
        stray = [v for v in (f.expected_values or []) if v not in f.options]
        if stray:
            raise ApprovalConfigurationError(f"{label} expects values outside its options: {stray}")
    elif f.field_type == "long_text":
        if (
            f.expected_value_boolean is not None
            or f.comparison_type is not None
            or f.expected_value_number is not None
            or f.expected_values
            or f.date_comparison_type is not None
        ):
            raise ApprovalConfigurationError(f"{label} is presence-only and cannot carry expected values")
    elif f.field_type == "date" and f.date_comparison_type is not None:
        if f.date_comparison_type not in DATE_COMPARISON_TYPES:
            raise UnknownComparisonError(f"{label} has unknown date comparison '{f.date_comparison_type}'")
        if f.expected_date is None:
            raise ApprovalConfigurationError(f"{label} must define an expected date")
        if f.date_comparison_type == "between":
            if f.expected_date_end is None or f.expected_date_end < f.expected_date:
                raise ApprovalConfigurationError(f"{label} needs an end date on or after its start date")


def validate_response_shape(f: StageApprovalField, response: StageApprovalResponse) -> None:
    """A stored response must populate exactly the value column matching its field's type."""
    populated = [col for col in VALUE_COLUMNS.values() if getattr(response, col) is not None]
    expected = VALUE_COLUMNS.get(f.field_type)
    if populated != [expected]:
        raise ApprovalConfigurationError(
            f"Response for '{f.field_name}' populates {populated or 'no value'}; expected only {expected}"
        )


def _compare_number(value: float, comparison: str, expected: float) -> bool:
    if comparison == "equal_to":
        return value == expected
    if comparison == "less_than":
        return value < expected
    if comparison == "greater_than":
        return value > expected
    raise UnknownComparisonError(f"Unknown comparison type '{comparison}'")


def _compare_date(value: date, f: StageApprovalField) -> bool:
    comparison = f.date_comparison_type
    if comparison == "before":
        return value < f.expected_date
    if comparison == "after":
        return value > f.expected_date
    if comparison == "exact":
        return value == f.expected_date
    if comparison == "between":
        return f.expected_date <= value <= f.expected_date_end
    raise UnknownComparisonError(f"Unknown date comparison '{comparison}'")


def evaluate_field(f: StageApprovalField, value: Any) -> Optional[str]:
    """Return None when the answer satisfies the field, else a short reason code."""
    if is_empty_answer(value):
        if f.is_required or has_expectation(f):
            return "missing"
        return None

    t = f.field_type
    if t == "boolean":
        if not isinstance(value, bool):
            return "invalid_value"
        return None if value == f.expected_value_boolean else "unexpected_value"
    if t == "number":
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return "invalid_value"
        return None if _compare_number(float(value), f.comparison_type, f.expected_value_number) else "comparison_failed"
    if t in ("short_text", "long_text"):
        return None
    if t == "single_select":
        if f.options and value not in f.options:
            return "invalid_option"
        if f.expected_values and value not in f.expected_values:
            return "unexpected_value"
        return None
    if t == "multi_select":
        selected = set(value)
        if f.options and not selected.issubset(set(f.options)):
            return "invalid_option"
        if f.expected_values and not set(f.expected_values).issubset(selected):
            return "unexpected_value"
        return None
    if t == "date":
        if not isinstance(value, date):
            return "invalid_value"
        if f.date_comparison_type is None:
            return None
        return None if _compare_date(value, f) else "comparison_failed"
    raise ApprovalConfigurationError(f"Approval field '{f.field_name}' has unknown type '{t}'")


def evaluate_approval(fields: Sequence[StageApprovalField], answers: Mapping[str, Any]) -> ApprovalResult:
    """Evaluate every visible field of an approval against ``answers`` (keyed by field id)."""
    unmet: List[UnmetField] = []
    for f in fields:
        validate_field_contract(f)
        if not is_visible(f.conditional_logic, answers):
            continue
        reason = evaluate_field(f, answers.get(str(f.id)))
        if reason:
            unmet.append(UnmetField(field_id=str(f.id), field_name=f.field_name, field_type=f.field_type, reason=reason))
    return ApprovalResult(passed=not unmet, unmet=unmet)


# ---------------------------------------------------------------------------
# Persistence helpers
# ---------------------------------------------------------------------------


def response_value(f: StageApprovalField, response: StageApprovalResponse) -> Any:
    return getattr(response, VALUE_COLUMNS[f.field_type])


def load_approval_answers(db: Session, project_id: uuid.UUID, fields: Iterable[StageApprovalField]) -> Dict[str, Any]:
    by_id = {f.id: f for f in fields}
    if not by_id:
        return {}
    rows = (
        db.query(StageApprovalResponse)
        .filter(StageApprovalResponse.project_id == project_id, StageApprovalResponse.field_id.in_(list(by_id)))
        .all()
    )
    return {str(r.field_id): response_value(by_id[r.field_id], r) for r in rows}


def upsert_approval_responses(
    db: Session,
    project_id: uuid.UUID,
    fields: Iterable[StageApprovalField],
    answers: Mapping[str, Any],
) -> List[StageApprovalResponse]:
    """Create or replace one response per (project, field). Caller commits.

    Answers must already be coerced; empty answers remove the stored response.
    """
    by_id = {str(f.id): f for f in fields}
    existing = {
        str(r.field_id): r
        for r in db.query(StageApprovalResponse)
        .filter(StageApprovalResponse.project_id == project_id)
        .all()
    }
    written: List[StageApprovalResponse] = []
    for field_id, value in answers.items():
        f = by_id.get(str(field_id))
        if f is None:
            continue
        row = existing.get(str(field_id))
        if is_empty_answer(value):
            if row is not None:
                db.delete(row)
            continue
        if row is None:
            row = StageApprovalResponse(project_id=project_id, field_id=f.id)
            db.add(row)
        for col in VALUE_COLUMNS.values():
            setattr(row, col, None)
        setattr(row, VALUE_COLUMNS[f.field_type], value)
        validate_response_shape(f, row)
        written.append(row)
    db.flush()
    return written
