import uuid
from datetime import date, datetime
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, field_validator


class RunRequest(BaseModel):
    as_of: Optional[date] = None
    trigger_source: Literal["manual", "scheduled", "catchup"] = "manual"
    force: bool = False


class RunLogOut(BaseModel):
    id: uuid.UUID
    run_date: date
    run_type: str
    trigger_source: Optional[str] = None
    status: str
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    total_services_checked: int
    services_found_due: int
    projects_created: int
    services_rescheduled: int
    errors_encountered: int
    ch_services_skipped: int
    execution_time_ms: Optional[int] = None
    error_details: Optional[Dict[str, Any]] = None
    summary: Optional[str] = None

    class Config:
        from_attributes = True


class RunOut(BaseModel):
    ran: bool
    reason: str
    run_log: Optional[RunLogOut] = None


class SchedulingExceptionOut(BaseModel):
    id: uuid.UUID
    run_log_id: uuid.UUID
    service_kind: str
    client_service_id: Optional[uuid.UUID] = None
    people_service_id: Optional[uuid.UUID] = None
    service_name: Optional[str] = None
    error_type: str
    error_message: str
    context: Optional[Dict[str, Any]] = None
    resolved: bool
    resolved_at: Optional[datetime] = None
    resolved_by_user_id: Optional[uuid.UUID] = None
    resolution_notes: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ResolveExceptionRequest(BaseModel):
    notes: Optional[str] = None

    @field_validator("notes", mode="before")
    @classmethod
    def empty_to_none(cls, v):
        if v is None:
            return None
        v = str(v).strip()
        return v or None


class PreviewRequest(BaseModel):
    kind: Literal["client", "people"] = "client"
    service_row_id: uuid.UUID
    as_of: Optional[date] = None
