import uuid
from typing import Dict, List, Type

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from ..auth.security import get_current_user
from ..db import get_db
from ..models.models import (
    ChangeReason,
    KanbanStage,
    Project,
    ProjectChronology,
    StageApproval,
    StageApprovalField,
    User,
)
from ..schemas.projects import (
    ApprovalAnswersIn,
    ApprovalEvaluationOut,
    ChronologyOut,
    ProjectOut,
    StageTimerOut,
    StageTransitionRequest,
    TransitionOut,
)
from ..services.approvals import coerce_answer, evaluate_approval, load_approval_answers, upsert_approval_responses
from ..services.business_time import WorkingCalendar
from ..services.cache import StageCountsCache
from ..services.errors import (
    ApprovalIncompleteError,
    ConcurrentTransitionError,
    InvalidStageError,
    ProjectInactiveError,
    RequiredFieldMissingError,
    StageTransitionError,
)
from ..services.stage_transitions import attempt_transition, get_stage_timer
from .deps import get_calendar, get_stage_counts_cache


router = APIRouter(prefix="/projects", tags=["projects"])

_TRANSITION_STATUS: Dict[Type[StageTransitionError], int] = {
    ApprovalIncompleteError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    RequiredFieldMissingError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ConcurrentTransitionError: status.HTTP_409_CONFLICT,
    ProjectInactiveError: status.HTTP_409_CONFLICT,
}


def transition_http_error(e: StageTransitionError) -> HTTPException:
    code = _TRANSITION_STATUS.get(type(e), status.HTTP_400_BAD_REQUEST)
    return HTTPException(status_code=code, detail=e.as_detail())


def _get_project_or_404(db: Session, project_id: uuid.UUID) -> Project:
    project = db.query(Project).filter(Project.id == project_id).first()
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")
    return project


def _project_approval_fields(db: Session, project: Project) -> List[StageApprovalField]:
    """Fields of every approval gate reachable from the project's type (stage and reason gates)."""
    stage_ids = [
        a for (a,) in db.query(KanbanStage.stage_approval_id).filter(KanbanStage.project_type_id == project.project_type_id).all() if a
    ]
    reason_ids = [
        a for (a,) in db.query(ChangeReason.stage_approval_id).filter(ChangeReason.project_type_id == project.project_type_id).all() if a
    ]
    approval_ids = set(stage_ids) | set(reason_ids)
    if not approval_ids:
        return []
    return db.query(StageApprovalField).filter(StageApprovalField.stage_approval_id.in_(list(approval_ids))).all()


@router.post("/{project_id}/status", response_model=TransitionOut)
def change_project_status(
    project_id: uuid.UUID,
    payload: StageTransitionRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    calendar: WorkingCalendar = Depends(get_calendar),
    cache: StageCountsCache = Depends(get_stage_counts_cache),
):
    _get_project_or_404(db, project_id)
    try:
        result = attempt_transition(
            db,
            project_id,
            target_stage_id=payload.target_stage_id,
            reason_id=payload.reason_id,
            custom_field_answers=payload.custom_field_answers,
            approval_answers=payload.approval_answers,
            actor_id=user.id,
            notes=payload.notes,
            calendar=calendar,
            cache=cache,
        )
    except StageTransitionError as e:
        raise transition_http_error(e)
    return TransitionOut(
        applied=result.applied,
        from_stage=result.from_stage,
        to_stage=result.to_stage,
        business_hours_in_previous_stage=result.business_hours_in_previous_stage,
        project=ProjectOut.model_validate(result.project),
        chronology=ChronologyOut.model_validate(result.chronology) if result.chronology is not None else None,
    )


@router.get("/{project_id}/chronology", response_model=List[ChronologyOut])
def list_project_chronology(
    project_id: uuid.UUID,
    db: Session = Depends(get_db),
    _=Depends(get_current_user),
):
    _get_project_or_404(db, project_id)
    return (
        db.query(ProjectChronology)
        .filter(ProjectChronology.project_id == project_id)
        .order_by(ProjectChronology.timestamp.desc())
        .all()
    )


@router.get("/{project_id}/stage-timer", response_model=StageTimerOut)
def project_stage_timer(
    project_id: uuid.UUID,
    db: Session = Depends(get_db),
    _=Depends(get_current_user),
    calendar: WorkingCalendar = Depends(get_calendar),
):
    project = _get_project_or_404(db, project_id)
    try:
        timer = get_stage_timer(db, project, calendar=calendar)
    except InvalidStageError as e:
        raise HTTPException(status_code=409, detail=e.as_detail())
    return StageTimerOut(**timer.__dict__)


@router.post("/{project_id}/approval-responses")
def save_approval_responses(
    project_id: uuid.UUID,
    payload: ApprovalAnswersIn,
    db: Session = Depends(get_db),
    _=Depends(get_current_user),
):
    project = _get_project_or_404(db, project_id)
    fields = {str(f.id): f for f in _project_approval_fields(db, project)}
    unknown = [k for k in payload.answers if k not in fields]
    if unknown:
        raise HTTPException(status_code=422, detail={"code": "unknown_fields", "fields": unknown})
    coerced = {}
    for field_id, raw in payload.answers.items():
        f = fields[field_id]
        try:
            coerced[field_id] = coerce_answer(f.field_type, raw)
        except ValueError as e:
            raise HTTPException(status_code=422, detail={"code": "invalid_value", "field": f.field_name, "message": str(e)})
    written = upsert_approval_responses(db, project.id, fields.values(), coerced)
    db.commit()
    return {"saved": len(written), "cleared": sum(1 for v in coerced.values() if v is None)}


@router.get("/{project_id}/approvals/{approval_id}/evaluation", response_model=ApprovalEvaluationOut)
def evaluate_project_approval(
    project_id: uuid.UUID,
    approval_id: uuid.UUID,
    db: Session = Depends(get_db),
    _=Depends(get_current_user),
):
    _get_project_or_404(db, project_id)
    approval = db.query(StageApproval).filter(StageApproval.id == approval_id).first()
    if not approval:
        raise HTTPException(status_code=404, detail="Approval not found")
    fields = list(approval.fields)
    result = evaluate_approval(fields, load_approval_answers(db, project_id, fields))
    return ApprovalEvaluationOut(
        approval_id=approval.id,
        approval_name=approval.name,
        passed=result.passed,
        unmet=[u.as_dict() for u in result.unmet],
    )
