import uuid
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from ..services.errors import ConditionalLogicError


ConditionOperator = Literal["equals", "not_equals", "contains", "is_empty", "is_not_empty"]


class Condition(BaseModel):
    question_id: str = Field(alias="questionId")
    operator: ConditionOperator
    value: Optional[Any] = None

    class Config:
        populate_by_name = True
        frozen = True

    @field_validator("question_id", mode="before")
    @classmethod
    def id_to_str(cls, v):
        if v is None:
            return v
        return str(v).strip()


class ConditionalLogic(BaseModel):
    show_if: Optional[Condition] = Field(default=None, alias="showIf")
    # Multi-condition extension; combined with `logic`
    conditions: Optional[List[Condition]] = None
    logic: Literal["and", "or"] = "and"

    class Config:
        populate_by_name = True
        frozen = True

    @field_validator("logic", mode="before")
    @classmethod
    def lower_logic(cls, v):
        return str(v).lower() if v else "and"


class StageChangeRule(BaseModel):
    if_stage_id: uuid.UUID = Field(alias="ifStageId")
    then_stage_id: uuid.UUID = Field(alias="thenStageId")
    then_reason_id: Optional[uuid.UUID] = Field(default=None, alias="thenReasonId")

    class Config:
        populate_by_name = True
        frozen = True


def parse_conditional_logic(raw: Optional[dict]) -> Optional[ConditionalLogic]:
    """Validate a stored conditional-logic blob. Empty blobs mean "always visible"."""
    if raw is None:
        return None
    if isinstance(raw, ConditionalLogic):
        return raw
    if not isinstance(raw, dict):
        raise ConditionalLogicError(f"Conditional logic must be an object, got {type(raw).__name__}")
    if not raw:
        return None
    try:
        logic = ConditionalLogic.model_validate(raw)
    except ValidationError as e:
        raise ConditionalLogicError(str(e)) from e
    if logic.show_if is None and not logic.conditions:
        return None
    return logic


def parse_stage_change_rules(raw: Optional[list]) -> List[StageChangeRule]:
    if not raw:
        return []
    if not isinstance(raw, list):
        raise ConditionalLogicError("Stage change rules must be a list")
    try:
        return [StageChangeRule.model_validate(item) for item in raw]
    except ValidationError as e:
        raise ConditionalLogicError(str(e)) from e
