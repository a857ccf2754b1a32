import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, field_validator


class StageTransitionRequest(BaseModel):
    target_stage_id: uuid.UUID
    reason_id: uuid.UUID
    custom_field_answers: Dict[str, Any] = {}
    approval_answers: Dict[str, Any] = {}
    notes: Optional[str] = None

    @field_validator("notes", mode="before")
    @classmethod
    def empty_to_none(cls, v):
        if v is None:
            return None
        v = str(v).strip()
        return v or None


class ChronologyOut(BaseModel):
    id: uuid.UUID
    from_status: Optional[str] = None
    to_status: str
    change_reason: Optional[str] = None
    assignee_id: Optional[uuid.UUID] = None
    changed_by_id: Optional[uuid.UUID] = None
    notes: Optional[str] = None
    timestamp: Optional[datetime] = None
    time_in_previous_stage: Optional[int] = None
    business_hours_in_previous_stage: Optional[float] = None
    answers: Optional[Dict[str, Any]] = None

    class Config:
        from_attributes = True


class ProjectOut(BaseModel):
    id: uuid.UUID
    project_type_id: uuid.UUID
    client_id: uuid.UUID
    description: str
    current_status: str
    current_assignee_id: Optional[uuid.UUID] = None
    inactive: bool
    archived: bool
    completion_status: Optional[str] = None

    class Config:
        from_attributes = True


class TransitionOut(BaseModel):
    applied: bool
    from_stage: str
    to_stage: str
    business_hours_in_previous_stage: Optional[float] = None
    project: ProjectOut
    chronology: Optional[ChronologyOut] = None


class StageTimerOut(BaseModel):
    stage_name: str
    entered_at: datetime
    business_hours_in_stage: float
    total_business_hours_in_stage: float
    max_instance_time: Optional[float] = None
    max_total_time: Optional[float] = None
    is_instance_overdue: bool
    is_total_overdue: bool
    display: str


class ApprovalAnswersIn(BaseModel):
    answers: Dict[str, Any]


class UnmetFieldOut(BaseModel):
    field_id: str
    field_name: str
    field_type: str
    reason: str


class ApprovalEvaluationOut(BaseModel):
    approval_id: uuid.UUID
    approval_name: str
    passed: bool
    unmet: List[UnmetFieldOut] = []


class VisibilityRequest(BaseModel):
    answers: Dict[str, Any] = {}


class TaskCompleteRequest(BaseModel):
    answers: Dict[str, Any] = {}
