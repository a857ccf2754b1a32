import uuid

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..auth.security import get_current_user
from ..db import get_db
from ..models.models import ClientProjectTask, ClientProjectTaskTemplate, User
from ..schemas.projects import TaskCompleteRequest, VisibilityRequest
from ..services.business_time import WorkingCalendar
from ..services.cache import StageCountsCache
from ..services.conditional_logic import visible_items
from ..services.errors import ConditionalLogicError, StageTransitionError
from ..services.stage_transitions import complete_client_task
from .deps import get_calendar, get_stage_counts_cache
from .projects import transition_http_error


router = APIRouter(tags=["client-tasks"])


def invalid_logic_error(e: ConditionalLogicError) -> HTTPException:
    return HTTPException(status_code=422, detail={"code": "invalid_conditional_logic", "message": str(e)})


@router.post("/task-templates/{template_id}/visibility")
def question_visibility(
    template_id: uuid.UUID,
    payload: VisibilityRequest,
    db: Session = Depends(get_db),
    _=Depends(get_current_user),
):
    template = db.query(ClientProjectTaskTemplate).filter(ClientProjectTaskTemplate.id == template_id).first()
    if not template:
        raise HTTPException(status_code=404, detail="Task template not found")
    try:
        visible = visible_items(template.questions, payload.answers)
    except ConditionalLogicError as e:
        raise invalid_logic_error(e)
    visible_ids = {q.id for q in visible}
    return {
        "visible_question_ids": [str(q.id) for q in visible],
        "hidden_question_ids": [str(q.id) for q in template.questions if q.id not in visible_ids],
    }


@router.post("/client-tasks/{task_id}/complete")
def complete_task(
    task_id: uuid.UUID,
    payload: TaskCompleteRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    calendar: WorkingCalendar = Depends(get_calendar),
    cache: StageCountsCache = Depends(get_stage_counts_cache),
):
    if not db.query(ClientProjectTask.id).filter(ClientProjectTask.id == task_id).first():
        raise HTTPException(status_code=404, detail="Task not found")
    try:
        task, result = complete_client_task(
            db, task_id, payload.answers, actor_id=user.id, calendar=calendar, cache=cache
        )
    except StageTransitionError as e:
        raise transition_http_error(e)
    except ConditionalLogicError as e:
        raise invalid_logic_error(e)
    return {
        "task_id": str(task.id),
        "status": task.status,
        "completed_at": task.completed_at.isoformat() if task.completed_at else None,
        "transition": None
        if result is None
        else {
            "applied": result.applied,
            "from_stage": result.from_stage,
            "to_stage": result.to_stage,
        },
    }
