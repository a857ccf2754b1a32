import uuid

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from ..auth.security import get_current_user
from ..db import get_db
from ..models.models import KanbanStage, ProjectType, StageReasonMap
from ..services.cache import StageCountsCache
from .deps import get_stage_counts_cache


router = APIRouter(prefix="/project-types", tags=["project-types"])


def _get_project_type_or_404(db: Session, project_type_id: uuid.UUID) -> ProjectType:
    project_type = db.query(ProjectType).filter(ProjectType.id == project_type_id).first()
    if not project_type:
        raise HTTPException(status_code=404, detail="Project type not found")
    return project_type


@router.get("/{project_type_id}/stages")
def list_stages(project_type_id: uuid.UUID, db: Session = Depends(get_db), _=Depends(get_current_user)):
    _get_project_type_or_404(db, project_type_id)
    stages = (
        db.query(KanbanStage)
        .filter(KanbanStage.project_type_id == project_type_id)
        .order_by(KanbanStage.order.asc())
        .all()
    )
    out = []
    for s in stages:
        reason_ids = [str(m.reason_id) for m in db.query(StageReasonMap).filter(StageReasonMap.stage_id == s.id).all()]
        out.append(
            {
                "id": str(s.id),
                "name": s.name,
                "order": s.order,
                "color": s.color,
                "max_instance_time": s.max_instance_time,
                "max_total_time": s.max_total_time,
                "stage_approval_id": str(s.stage_approval_id) if s.stage_approval_id else None,
                "can_be_final_stage": bool(s.can_be_final_stage),
                "exit_reason_ids": reason_ids,
            }
        )
    return out


@router.get("/{project_type_id}/stage-counts")
def stage_counts(
    project_type_id: uuid.UUID,
    db: Session = Depends(get_db),
    _=Depends(get_current_user),
    cache: StageCountsCache = Depends(get_stage_counts_cache),
):
    _get_project_type_or_404(db, project_type_id)
    counts = cache.get(db, project_type_id)
    stages = (
        db.query(KanbanStage.name)
        .filter(KanbanStage.project_type_id == project_type_id)
        .order_by(KanbanStage.order.asc())
        .all()
    )
    return {
        "project_type_id": str(project_type_id),
        "counts": {name: counts.get(name, 0) for (name,) in stages},
        # Projects whose status no longer matches a configured stage
        "unmatched": {k: v for k, v in counts.items() if k not in {n for (n,) in stages}},
    }
