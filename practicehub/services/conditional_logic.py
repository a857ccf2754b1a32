"""
Show/hide evaluation for task questions and approval fields.

Answers are keyed by question (or field) id as a string. A question id that is
absent from the answers map is unanswered, and a condition on an unanswered
question is never satisfied.
"""
from datetime import date
from typing import Any, Iterable, List, Mapping, Optional, Sequence, TypeVar

from ..schemas.conditions import Condition, ConditionalLogic, parse_conditional_logic


T = TypeVar("T")

_MISSING = object()


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def is_empty_answer(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, tuple, set)):
        return len(value) == 0
    return False


def _equals(answer: Any, expected: Any) -> bool:
    if isinstance(answer, (list, tuple, set)):
        return _as_text(expected) in {_as_text(a) for a in answer}
    return _as_text(answer) == _as_text(expected)


def _contains(answer: Any, needle: Any) -> bool:
    if needle is None or answer is None:
        return False
    needle_text = _as_text(needle).lower()
    if isinstance(answer, (list, tuple, set)):
        return any(needle_text in _as_text(a).lower() for a in answer)
    return needle_text in _as_text(answer).lower()


def evaluate_condition(condition: Condition, answers: Mapping[str, Any]) -> bool:
    answer = answers.get(condition.question_id, _MISSING)
    if answer is _MISSING:
        return False

    op = condition.operator
    if op == "is_empty":
        return is_empty_answer(answer)
    if op == "is_not_empty":
        return not is_empty_answer(answer)
    if answer is None:
        return False
    if op == "equals":
        return _equals(answer, condition.value)
    if op == "not_equals":
        return not _equals(answer, condition.value)
    if op == "contains":
        return _contains(answer, condition.value)
    # Literal type on Condition.operator makes this unreachable for validated input
    raise ValueError(f"Unsupported operator: {op}")


def _combine(conditions: Sequence[Condition], logic: str, answers: Mapping[str, Any]) -> bool:
    # Extension point: multi-condition reduction. AND unless logic == "or".
    results = (evaluate_condition(c, answers) for c in conditions)
    if logic == "or":
        return any(results)
    return all(results)


def is_visible(logic: Optional[Any], answers: Mapping[str, Any]) -> bool:
    """Return True when an item guarded by ``logic`` should be shown.

    ``logic`` may be a parsed ConditionalLogic or the raw stored JSON. Items
    without logic are always visible.
    """
    parsed = logic if isinstance(logic, ConditionalLogic) else parse_conditional_logic(logic)
    if parsed is None:
        return True
    if not parsed.conditions:
        return evaluate_condition(parsed.show_if, answers)
    conditions: List[Condition] = []
    if parsed.show_if is not None:
        conditions.append(parsed.show_if)
    conditions.extend(parsed.conditions)
    return _combine(conditions, parsed.logic, answers)


def visible_items(items: Iterable[T], answers: Mapping[str, Any], attr: str = "conditional_logic") -> List[T]:
    """Filter questions or approval fields down to the ones currently shown."""
    return [item for item in items if is_visible(getattr(item, attr, None), answers)]
