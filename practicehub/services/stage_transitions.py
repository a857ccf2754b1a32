"""
Kanban stage transitions.

A project's ``current_status`` is a stage *name*. Every lookup goes through
StageResolver so a name that no longer matches a configured stage fails with
InvalidStageError instead of silently resolving to nothing.
"""
import uuid
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import structlog
from sqlalchemy import update
from sqlalchemy.orm import Session

from ..models.models import (
    ChangeReason,
    ClientProjectTask,
    KanbanStage,
    Project,
    ProjectChronology,
    ReasonCustomField,
    ReasonFieldResponse,
    StageApproval,
    StageApprovalField,
    StageReasonMap,
    utcnow,
)
from ..schemas.conditions import parse_stage_change_rules
from .approvals import VALUE_COLUMNS, coerce_answer, evaluate_approval, load_approval_answers, upsert_approval_responses
from .business_time import (
    WorkingCalendar,
    business_hours_between,
    ensure_utc,
    format_business_hours,
    stage_entry_timestamp,
)
from .cache import CacheInvalidator, NullCache
from .conditional_logic import is_empty_answer, visible_items
from .errors import (
    ApprovalIncompleteError,
    ConcurrentTransitionError,
    InvalidStageError,
    ProjectInactiveError,
    ReasonNotAllowedError,
    RequiredFieldMissingError,
    StageTransitionError,
    UnmetField,
)


logger = structlog.get_logger(__name__)

# Reason responses have no single-select column; single selects are stored as short text
REASON_VALUE_COLUMNS: Dict[str, str] = dict(VALUE_COLUMNS, single_select="value_short_text")

CompletionHook = Callable[[Project, KanbanStage, datetime], None]


@dataclass
class TransitionResult:
    applied: bool
    project: Project
    from_stage: str
    to_stage: str
    chronology: Optional[ProjectChronology] = None
    business_hours_in_previous_stage: Optional[float] = None


@dataclass
class StageTimer:
    stage_name: str
    entered_at: datetime
    business_hours_in_stage: float
    total_business_hours_in_stage: float
    max_instance_time: Optional[float]
    max_total_time: Optional[float]
    is_instance_overdue: bool
    is_total_overdue: bool
    display: str


class StageResolver:
    """Stage lookups for one project type."""

    def __init__(self, db: Session, project_type_id: uuid.UUID):
        self.project_type_id = project_type_id
        self.stages: List[KanbanStage] = (
            db.query(KanbanStage)
            .filter(KanbanStage.project_type_id == project_type_id)
            .order_by(KanbanStage.order.asc())
            .all()
        )

    def by_name(self, name: Optional[str]) -> KanbanStage:
        for stage in self.stages:
            if stage.name == name:
                return stage
        raise InvalidStageError(f"Status '{name}' does not match any stage of this project type")

    def by_id(self, stage_id: Optional[uuid.UUID]) -> KanbanStage:
        for stage in self.stages:
            if stage_id is not None and str(stage.id) == str(stage_id):
                return stage
        raise InvalidStageError(f"Stage {stage_id} does not belong to this project type")

    def first(self) -> KanbanStage:
        if not self.stages:
            raise InvalidStageError("Project type has no stages configured")
        return self.stages[0]


def apply_completion_policy(project: Project, stage: KanbanStage, now: datetime) -> None:
    """Default final-stage hook: record the completion status and deactivate the project."""
    project.completion_status = stage.completion_status
    project.inactive = True
    project.inactive_reason = "Completed"
    project.inactive_at = now


def _jsonable(value: Any) -> Any:
    if isinstance(value, date):
        return value.isoformat()
    return value


def _approval_gates(current: KanbanStage, reason: ChangeReason) -> List[StageApproval]:
    gates: List[StageApproval] = []
    for approval in (current.stage_approval, reason.stage_approval):
        if approval is not None and all(g.id != approval.id for g in gates):
            gates.append(approval)
    return gates


def _evaluate_gates(
    db: Session,
    project: Project,
    gates: List[StageApproval],
    approval_answers: Mapping[str, Any],
) -> List[Tuple[List[StageApprovalField], Dict[str, Any]]]:
    """Run every gate against stored answers overlaid with the submitted ones.

    Returns the new answers to persist per gate once the transition commits.
    """
    submitted = {str(k): v for k, v in (approval_answers or {}).items()}
    to_persist = []
    for approval in gates:
        fields = list(approval.fields)
        merged = load_approval_answers(db, project.id, fields)
        new_values: Dict[str, Any] = {}
        invalid: List[UnmetField] = []
        for f in fields:
            key = str(f.id)
            if key not in submitted:
                continue
            try:
                value = coerce_answer(f.field_type, submitted[key])
            except ValueError:
                invalid.append(UnmetField(field_id=key, field_name=f.field_name, field_type=f.field_type, reason="invalid_value"))
                merged.pop(key, None)
                continue
            merged[key] = value
            new_values[key] = value

        result = evaluate_approval(fields, merged)
        invalid_ids = {u.field_id for u in invalid}
        unmet = invalid + [u for u in result.unmet if u.field_id not in invalid_ids]
        if unmet:
            raise ApprovalIncompleteError(approval.name, unmet)
        to_persist.append((fields, new_values))
    return to_persist


def _validate_custom_fields(reason: ChangeReason, answers: Mapping[str, Any]) -> Dict[str, Tuple[ReasonCustomField, Any]]:
    submitted = {str(k): v for k, v in (answers or {}).items()}
    accepted: Dict[str, Tuple[ReasonCustomField, Any]] = {}
    problems: List[UnmetField] = []
    for cf in reason.custom_fields:
        key = str(cf.id)

        def _problem(code: str) -> UnmetField:
            return UnmetField(field_id=key, field_name=cf.field_name, field_type=cf.field_type, reason=code)

        try:
            value = coerce_answer(cf.field_type, submitted.get(key))
        except ValueError:
            problems.append(_problem("invalid_type"))
            continue
        if value is None:
            if cf.is_required:
                problems.append(_problem("missing"))
            continue
        if cf.field_type == "multi_select" and (not cf.options or not set(value).issubset(set(cf.options))):
            problems.append(_problem("invalid_option"))
            continue
        if cf.field_type == "single_select" and (not cf.options or value not in cf.options):
            problems.append(_problem("invalid_option"))
            continue
        accepted[key] = (cf, value)

    unknown = set(submitted) - {str(cf.id) for cf in reason.custom_fields}
    if unknown:
        logger.warning("reason_custom_field_answers_ignored", reason_id=str(reason.id), field_ids=sorted(unknown))
    if problems:
        raise RequiredFieldMissingError(problems)
    return accepted


def _resolve_reason(db: Session, project: Project, current: KanbanStage, reason_id: Optional[uuid.UUID]) -> ChangeReason:
    if reason_id is None:
        raise ReasonNotAllowedError("A change reason is required to move a project")
    reason = db.query(ChangeReason).filter(ChangeReason.id == reason_id).first()
    if reason is None or reason.project_type_id != project.project_type_id:
        raise ReasonNotAllowedError(f"Change reason {reason_id} is not defined for this project type")
    mapped = (
        db.query(StageReasonMap)
        .filter(StageReasonMap.stage_id == current.id, StageReasonMap.reason_id == reason.id)
        .first()
    )
    if mapped is None:
        raise ReasonNotAllowedError(f"Reason '{reason.reason}' cannot be used to leave stage '{current.name}'")
    return reason


def attempt_transition(
    db: Session,
    project_id: uuid.UUID,
    *,
    target_stage_id: uuid.UUID,
    reason_id: Optional[uuid.UUID],
    custom_field_answers: Optional[Mapping[str, Any]] = None,
    approval_answers: Optional[Mapping[str, Any]] = None,
    actor_id: Optional[uuid.UUID] = None,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
    calendar: Optional[WorkingCalendar] = None,
    cache: Optional[CacheInvalidator] = None,
    on_final_stage: Optional[CompletionHook] = apply_completion_policy,
) -> TransitionResult:
    """
    Move a project to another stage of its pipeline.

    Validation (stage membership, reason mapping, approval gates, reason custom
    fields) happens before anything is written. On success the project update,
    the chronology row, reason field responses and approval responses commit
    together.

    Args:
        db: Database session; committed on success, rolled back on failure
        project_id: Project to move
        target_stage_id: Destination stage (must belong to the project's type)
        reason_id: Change reason; must be mapped to the current stage
        custom_field_answers: Answers for the reason's custom fields, by field id
        approval_answers: New approval answers, by approval field id
        actor_id: User performing the move (None for automated triggers)
        notes: Free text stored on the chronology row
        now: Transition instant (defaults to current UTC time)
        calendar: Working calendar for business hours
        cache: Stage counts cache to invalidate after commit
        on_final_stage: Hook applied when the target is a final stage with a completion status

    Returns:
        TransitionResult; ``applied`` is False when the project is already in the target stage

    Raises:
        InvalidStageError, ReasonNotAllowedError, ApprovalIncompleteError,
        RequiredFieldMissingError, ConcurrentTransitionError, ProjectInactiveError
    """
    now = ensure_utc(now or utcnow())
    cache = cache or NullCache()

    project = db.query(Project).filter(Project.id == project_id).first()
    if project is None:
        raise LookupError(f"Project {project_id} not found")

    try:
        if project.inactive or project.archived:
            raise ProjectInactiveError("Inactive or archived projects cannot change stage")
        resolver = StageResolver(db, project.project_type_id)
        current = resolver.by_name(project.current_status)
        target = resolver.by_id(target_stage_id)

        if target.id == current.id:
            logger.info("stage_transition_noop", project_id=str(project.id), stage=current.name)
            return TransitionResult(applied=False, project=project, from_stage=current.name, to_stage=target.name)

        reason = _resolve_reason(db, project, current, reason_id)
        approvals_to_persist = _evaluate_gates(db, project, _approval_gates(current, reason), approval_answers or {})
        custom_values = _validate_custom_fields(reason, custom_field_answers or {})
    except StageTransitionError as e:
        logger.info("stage_transition_rejected", project_id=str(project.id), code=e.code, error=e.message)
        raise

    timestamps = [
        ts
        for (ts,) in db.query(ProjectChronology.timestamp).filter(ProjectChronology.project_id == project.id).all()
    ]
    entered_at = stage_entry_timestamp([{"timestamp": ts} for ts in timestamps], project.created_at)
    minutes_in_stage = max(0, int((now - entered_at).total_seconds() // 60))
    hours_in_stage = business_hours_between(entered_at, now, calendar)
    new_assignee_id = target.assigned_user_id or project.current_assignee_id
    from_status = current.name

    try:
        result = db.execute(
            update(Project)
            .where(Project.id == project.id, Project.current_status == from_status)
            .values(current_status=target.name, current_assignee_id=new_assignee_id, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ConcurrentTransitionError(
                f"Project moved out of '{from_status}' by another change; reload and try again"
            )
        db.expire(project, ["current_status", "current_assignee_id", "updated_at"])

        chronology = ProjectChronology(
            project_id=project.id,
            from_status=from_status,
            to_status=target.name,
            change_reason=reason.reason,
            assignee_id=new_assignee_id,
            changed_by_id=actor_id,
            notes=notes,
            timestamp=now,
            time_in_previous_stage=minutes_in_stage,
            business_hours_in_previous_stage=hours_in_stage,
            answers={
                "custom_fields": {k: _jsonable(v) for k, (_, v) in custom_values.items()},
                "approvals": {k: _jsonable(v) for _, values in approvals_to_persist for k, v in values.items()},
            },
        )
        db.add(chronology)
        db.flush()

        for key, (cf, value) in custom_values.items():
            response = ReasonFieldResponse(chronology_id=chronology.id, custom_field_id=cf.id, field_type=cf.field_type)
            setattr(response, REASON_VALUE_COLUMNS[cf.field_type], value)
            db.add(response)

        for fields, values in approvals_to_persist:
            if values:
                upsert_approval_responses(db, project.id, fields, values)

        if target.can_be_final_stage and target.completion_status and on_final_stage is not None:
            on_final_stage(project, target, now)

        db.commit()
    except ConcurrentTransitionError as e:
        db.rollback()
        logger.warning("stage_transition_conflict", project_id=str(project_id), from_status=from_status, error=e.message)
        raise
    except Exception:
        db.rollback()
        raise

    db.refresh(project)
    cache.invalidate(project.project_type_id)
    logger.info(
        "stage_transition_applied",
        project_id=str(project.id),
        from_status=from_status,
        to_status=target.name,
        reason=reason.reason,
        business_hours_in_previous_stage=hours_in_stage,
        actor_id=str(actor_id) if actor_id else None,
    )
    return TransitionResult(
        applied=True,
        project=project,
        from_stage=from_status,
        to_stage=target.name,
        chronology=chronology,
        business_hours_in_previous_stage=hours_in_stage,
    )


def get_stage_timer(
    db: Session,
    project: Project,
    now: Optional[datetime] = None,
    calendar: Optional[WorkingCalendar] = None,
) -> StageTimer:
    """Business time spent in the project's current stage, against the stage's limits."""
    now = ensure_utc(now or utcnow())
    stage = StageResolver(db, project.project_type_id).by_name(project.current_status)
    entries = (
        db.query(ProjectChronology)
        .filter(ProjectChronology.project_id == project.id)
        .order_by(ProjectChronology.timestamp.asc())
        .all()
    )
    entered_at = stage_entry_timestamp(entries, project.created_at)
    in_stage = business_hours_between(entered_at, now, calendar)
    # Earlier visits use the hours recorded when the project left the stage
    earlier = sum(e.business_hours_in_previous_stage or 0.0 for e in entries if e.from_status == stage.name)
    total = round(in_stage + earlier, 4)
    return StageTimer(
        stage_name=stage.name,
        entered_at=entered_at,
        business_hours_in_stage=in_stage,
        total_business_hours_in_stage=total,
        max_instance_time=stage.max_instance_time,
        max_total_time=stage.max_total_time,
        is_instance_overdue=stage.max_instance_time is not None and in_stage > stage.max_instance_time,
        is_total_overdue=stage.max_total_time is not None and total > stage.max_total_time,
        display=format_business_hours(in_stage, calendar),
    )


def complete_client_task(
    db: Session,
    task_id: uuid.UUID,
    answers: Mapping[str, Any],
    *,
    actor_id: Optional[uuid.UUID] = None,
    now: Optional[datetime] = None,
    calendar: Optional[WorkingCalendar] = None,
    cache: Optional[CacheInvalidator] = None,
) -> Tuple[ClientProjectTask, Optional[TransitionResult]]:
    """
    Complete a client task and fire its on-completion stage move.

    Only questions visible under their conditional logic are validated and
    stored. The destination comes from the first stage change rule matching
    the project's current stage, else from the template's on-completion stage.
    """
    now = ensure_utc(now or utcnow())
    task = db.query(ClientProjectTask).filter(ClientProjectTask.id == task_id).first()
    if task is None:
        raise LookupError(f"Task {task_id} not found")
    if task.status == "completed":
        raise StageTransitionError("Task is already completed")

    template = task.template
    answers = {str(k): v for k, v in (answers or {}).items()}
    visible = visible_items(template.questions, answers)
    missing = [
        UnmetField(field_id=str(q.id), field_name=q.label, field_type=q.question_type, reason="missing")
        for q in visible
        if q.is_required and is_empty_answer(answers.get(str(q.id)))
    ]
    if missing:
        raise RequiredFieldMissingError(missing)

    project = task.project
    current = StageResolver(db, project.project_type_id).by_name(project.current_status)
    target_stage_id = template.on_completion_stage_id
    reason_id = template.on_completion_reason_id
    for rule in parse_stage_change_rules(template.stage_change_rules):
        if rule.if_stage_id == current.id:
            target_stage_id = rule.then_stage_id
            reason_id = rule.then_reason_id or reason_id
            break

    task.status = "completed"
    task.completed_at = now
    task.completed_by_id = actor_id
    task.responses = {str(q.id): _jsonable(answers.get(str(q.id))) for q in visible if str(q.id) in answers}
    db.flush()

    if target_stage_id is None:
        db.commit()
        db.refresh(task)
        return task, None

    # attempt_transition commits the task completion together with the move
    try:
        result = attempt_transition(
            db,
            project.id,
            target_stage_id=target_stage_id,
            reason_id=reason_id,
            actor_id=actor_id,
            notes=f"Automatically moved on completion of task '{template.name}'",
            now=now,
            calendar=calendar,
            cache=cache,
        )
    except Exception:
        db.rollback()
        raise
    if not result.applied:
        db.commit()
    db.refresh(task)
    return task, result
