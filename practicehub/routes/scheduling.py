import uuid
from datetime import date
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..auth.security import get_current_user
from ..db import get_db
from ..models.models import SchedulingException, SchedulingRunLog, Service, User, utcnow
from ..schemas.scheduling import (
    PreviewRequest,
    ResolveExceptionRequest,
    RunLogOut,
    RunOut,
    RunRequest,
    SchedulingExceptionOut,
)
from ..services.business_time import WorkingCalendar
from ..services.cache import StageCountsCache
from ..services.errors import RunFatalError, SchedulingError
from ..services.recurrence import (
    NextOccurrence,
    compute_next_occurrence,
    is_due,
    load_scheduled_service,
    overdue_services,
)
from ..services.scheduling_run import ensure_run_for_date, get_scheduling_status, resolve_scheduling_exception
from .deps import get_calendar, get_session_factory, get_stage_counts_cache


router = APIRouter(prefix="/scheduling", tags=["scheduling"])


@router.post("/run", response_model=RunOut)
def trigger_run(
    payload: RunRequest,
    db: Session = Depends(get_db),
    _=Depends(get_current_user),
    cache: StageCountsCache = Depends(get_stage_counts_cache),
    session_factory=Depends(get_session_factory),
):
    now = utcnow()
    target = payload.as_of or now.date()
    try:
        result = ensure_run_for_date(
            target, payload.trigger_source, now=now, force=payload.force, session_factory=session_factory, cache=cache
        )
    except RunFatalError as e:
        raise HTTPException(status_code=500, detail={"code": "run_failed", "message": str(e)})
    run_log = None
    if result.run_log_id is not None:
        run_log = db.query(SchedulingRunLog).filter(SchedulingRunLog.id == result.run_log_id).first()
    return RunOut(
        ran=result.ran,
        reason=result.reason,
        run_log=RunLogOut.model_validate(run_log) if run_log is not None else None,
    )


@router.get("/status")
def scheduling_status(db: Session = Depends(get_db), _=Depends(get_current_user)):
    return get_scheduling_status(db)


@router.get("/runs", response_model=List[RunLogOut])
def list_runs(
    status: Optional[str] = None,
    limit: int = 50,
    db: Session = Depends(get_db),
    _=Depends(get_current_user),
):
    query = db.query(SchedulingRunLog)
    if status:
        query = query.filter(SchedulingRunLog.status == status)
    return query.order_by(SchedulingRunLog.started_at.desc()).limit(min(max(limit, 1), 500)).all()


@router.get("/runs/{run_id}", response_model=RunLogOut)
def get_run(run_id: uuid.UUID, db: Session = Depends(get_db), _=Depends(get_current_user)):
    run_log = db.query(SchedulingRunLog).filter(SchedulingRunLog.id == run_id).first()
    if not run_log:
        raise HTTPException(status_code=404, detail="Run not found")
    return run_log


@router.get("/exceptions", response_model=List[SchedulingExceptionOut])
def list_exceptions(
    resolved: Optional[bool] = False,
    run_id: Optional[uuid.UUID] = None,
    error_type: Optional[str] = None,
    db: Session = Depends(get_db),
    _=Depends(get_current_user),
):
    query = db.query(SchedulingException)
    if resolved is not None:
        query = query.filter(SchedulingException.resolved.is_(resolved))
    if run_id:
        query = query.filter(SchedulingException.run_log_id == run_id)
    if error_type:
        query = query.filter(SchedulingException.error_type == error_type)
    return query.order_by(SchedulingException.created_at.desc()).all()


@router.post("/exceptions/{exception_id}/resolve", response_model=SchedulingExceptionOut)
def resolve_exception(
    exception_id: uuid.UUID,
    payload: ResolveExceptionRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    try:
        return resolve_scheduling_exception(db, exception_id, user.id, payload.notes)
    except LookupError:
        raise HTTPException(status_code=404, detail="Scheduling exception not found")
    except ValueError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.get("/overdue")
def list_overdue_services(
    as_of: Optional[date] = None,
    db: Session = Depends(get_db),
    _=Depends(get_current_user),
    calendar: WorkingCalendar = Depends(get_calendar),
):
    return overdue_services(db, as_of or utcnow().date(), calendar)


@router.post("/preview")
def preview_next_occurrence(
    payload: PreviewRequest,
    db: Session = Depends(get_db),
    _=Depends(get_current_user),
):
    scheduled = load_scheduled_service(db, payload.kind, payload.service_row_id)
    if scheduled is None:
        raise HTTPException(status_code=404, detail="Service not found")
    as_of = payload.as_of or utcnow().date()
    service: Service = scheduled.service
    try:
        decision = compute_next_occurrence(
            scheduled.row,
            as_of,
            companies_house=scheduled.is_companies_house,
            active=service is not None and bool(service.is_active),
        )
    except SchedulingError as e:
        return {"due": is_due(scheduled.row, as_of), "error_type": e.error_type, "error": e.message}
    if not isinstance(decision, NextOccurrence):
        return {"due": False, "skip_reason": decision.reason, "detail": decision.detail or None}
    return {
        "due": True,
        "frequency": decision.frequency,
        "scheduled_date": decision.scheduled_date.isoformat(),
        "project_due_date": decision.due_date.isoformat() if decision.due_date else None,
        "next_start_date": decision.next_start_date.isoformat(),
        "next_due_date": decision.next_due_date.isoformat() if decision.next_due_date else None,
        "next_target_delivery_date": decision.next_target_delivery_date.isoformat()
        if decision.next_target_delivery_date
        else None,
    }
