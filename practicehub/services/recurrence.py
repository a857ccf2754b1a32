"""
Recurring service scheduling.

compute_next_occurrence decides, without touching the database, whether a
client or personal service is due and what its next dates are.
process_due_service turns a due decision into a new project, advances the
service's schedule and appends a ProjectSchedulingHistory row. It never
commits; the run controller owns the per-service transaction.
"""
import uuid
from dataclasses import dataclass
from datetime import date, datetime, time
from typing import List, Optional, Union

import structlog
from sqlalchemy.orm import Session

from ..models.models import (
    Client,
    ClientService,
    ClientServiceRoleAssignment,
    KanbanStage,
    PeopleService,
    Person,
    Project,
    ProjectChronology,
    ProjectSchedulingHistory,
    ProjectType,
    Service,
    utcnow,
)
from .business_time import WorkingCalendar, business_hours_between, format_business_hours
from .errors import SchedulingConfigurationError
from .frequency import advance, normalize_frequency
from .stage_transitions import StageResolver


logger = structlog.get_logger(__name__)

AUTO_CLOSE_REASON = "Archived (Auto-closed)"

ServiceRow = Union[ClientService, PeopleService]


@dataclass(frozen=True)
class NextOccurrence:
    frequency: str
    # The cycle being materialised now
    scheduled_date: date
    due_date: Optional[date]
    target_delivery_date: Optional[date]
    # What the service rolls forward to
    next_start_date: date
    next_due_date: Optional[date]
    next_target_delivery_date: Optional[date]


@dataclass(frozen=True)
class SchedulingSkip:
    reason: str  # not_due|inactive|ch_date_missing
    detail: str = ""


@dataclass
class ScheduledService:
    kind: str  # client|people
    row: ServiceRow
    service: Service
    client: Optional[Client]
    person: Optional[Person] = None

    @property
    def is_companies_house(self) -> bool:
        return bool(self.service.is_companies_house_connected)

    @property
    def owner_label(self) -> str:
        if self.kind == "people" and self.person is not None:
            return self.person.full_name
        return self.client.name if self.client is not None else "Unknown client"


@dataclass
class ServiceOutcome:
    kind: str
    service_row_id: uuid.UUID
    found_due: bool = False
    project_created: bool = False
    rescheduled: bool = False
    ch_skipped: bool = False
    skip_reason: Optional[str] = None
    project_id: Optional[uuid.UUID] = None
    project_type_id: Optional[uuid.UUID] = None


def is_due(row: ServiceRow, as_of: date) -> bool:
    return row.next_start_date is not None and row.next_start_date <= as_of


def compute_next_occurrence(
    row: ServiceRow,
    as_of: date,
    *,
    companies_house: bool,
    active: bool = True,
) -> Union[NextOccurrence, SchedulingSkip]:
    """
    Work out the next cycle of a recurring service.

    Args:
        row: ClientService or PeopleService holding the schedule fields
        as_of: Run date; the service is due when next_start_date <= as_of
        companies_house: True when the due and target dates come from Companies House
        active: False for services that should not be scheduled at all

    Returns:
        NextOccurrence when due, otherwise a SchedulingSkip

    Raises:
        SchedulingConfigurationError: missing/invalid frequency, missing dates on self-scheduled services
        SchedulingComputationError: date arithmetic failed
    """
    if not active or not row.is_active:
        return SchedulingSkip("inactive")
    if row.next_start_date is None:
        if companies_house:
            return SchedulingSkip("ch_date_missing", "No start date supplied for Companies House service")
        raise SchedulingConfigurationError("Service has no next start date", error_type="missing_start_date")
    if row.next_start_date > as_of:
        return SchedulingSkip("not_due")

    frequency = normalize_frequency(row.frequency)

    if companies_house:
        if row.next_due_date is None:
            return SchedulingSkip("ch_date_missing", "Companies House due date not yet available")
        # Due and target dates are authoritative; only the start date rolls forward
        return NextOccurrence(
            frequency=frequency,
            scheduled_date=row.next_start_date,
            due_date=row.next_due_date,
            target_delivery_date=row.target_delivery_date,
            next_start_date=advance(row.next_start_date, frequency),
            next_due_date=row.next_due_date,
            next_target_delivery_date=row.target_delivery_date,
        )

    if row.next_due_date is None:
        raise SchedulingConfigurationError("Service has no next due date", error_type="missing_due_date")
    if row.target_delivery_date is None:
        raise SchedulingConfigurationError(
            "Target delivery date is required for services not connected to Companies House",
            error_type="missing_target_delivery_date",
        )
    return NextOccurrence(
        frequency=frequency,
        scheduled_date=row.next_start_date,
        due_date=row.next_due_date,
        target_delivery_date=row.target_delivery_date,
        next_start_date=advance(row.next_start_date, frequency),
        next_due_date=advance(row.next_due_date, frequency),
        next_target_delivery_date=advance(row.target_delivery_date, frequency),
    )


def load_scheduled_service(db: Session, kind: str, row_id: uuid.UUID, lock: bool = False) -> Optional[ScheduledService]:
    """Load a service row with its catalogue entry and owner; ``lock`` takes a row lock for the transaction."""
    model = ClientService if kind == "client" else PeopleService
    query = db.query(model).filter(model.id == row_id)
    if lock:
        query = query.with_for_update()
    row = query.first()
    if row is None:
        return None
    service = db.query(Service).filter(Service.id == row.service_id).first()
    if kind == "client":
        client = db.query(Client).filter(Client.id == row.client_id).first()
        return ScheduledService(kind=kind, row=row, service=service, client=client)
    person = db.query(Person).filter(Person.id == row.person_id).first()
    client = None
    if person is not None and person.client_id is not None:
        client = db.query(Client).filter(Client.id == person.client_id).first()
    return ScheduledService(kind=kind, row=row, service=service, client=client, person=person)


def _history_filter(query, scheduled: ScheduledService):
    if scheduled.kind == "client":
        return query.filter(ProjectSchedulingHistory.client_service_id == scheduled.row.id)
    return query.filter(ProjectSchedulingHistory.people_service_id == scheduled.row.id)


def already_created(db: Session, scheduled: ScheduledService, scheduled_date: date) -> bool:
    query = db.query(ProjectSchedulingHistory.id).filter(
        ProjectSchedulingHistory.action == "created",
        ProjectSchedulingHistory.scheduled_date == scheduled_date,
    )
    return _history_filter(query, scheduled).first() is not None


def _resolve_assignee(db: Session, scheduled: ScheduledService, first_stage: KanbanStage) -> uuid.UUID:
    if scheduled.row.service_owner_id:
        return scheduled.row.service_owner_id
    if scheduled.kind == "client" and first_stage.assigned_work_role_id:
        assignment = (
            db.query(ClientServiceRoleAssignment)
            .filter(
                ClientServiceRoleAssignment.client_service_id == scheduled.row.id,
                ClientServiceRoleAssignment.work_role_id == first_stage.assigned_work_role_id,
                ClientServiceRoleAssignment.is_active.is_(True),
            )
            .first()
        )
        if assignment is not None:
            return assignment.user_id
    if first_stage.assigned_user_id:
        return first_stage.assigned_user_id
    raise SchedulingConfigurationError(
        "No service owner, role assignment or stage assignee to own the new project",
        error_type="missing_owner",
        context={"first_stage": first_stage.name},
    )


def _archive_previous_projects(db: Session, client_id: uuid.UUID, project_type_id: uuid.UUID, now: datetime) -> List[Project]:
    previous = (
        db.query(Project)
        .filter(
            Project.client_id == client_id,
            Project.project_type_id == project_type_id,
            Project.inactive.is_(False),
            Project.archived.is_(False),
        )
        .all()
    )
    for project in previous:
        project.completion_status = "completed_unsuccessfully"
        project.archived = True
        project.inactive = True
        project.inactive_reason = "Replaced by a newly scheduled project"
        project.inactive_at = now
        db.add(
            ProjectChronology(
                project_id=project.id,
                from_status=project.current_status,
                to_status=project.current_status,
                change_reason=AUTO_CLOSE_REASON,
                notes="Closed automatically: project type allows one active project per client",
                timestamp=now,
            )
        )
    return previous


def _record_history(
    db: Session,
    scheduled: ScheduledService,
    action: str,
    *,
    occurrence: Optional[NextOccurrence] = None,
    project_id: Optional[uuid.UUID] = None,
    run_log_id: Optional[uuid.UUID] = None,
    notes: Optional[str] = None,
) -> ProjectSchedulingHistory:
    row = scheduled.row
    entry = ProjectSchedulingHistory(
        client_service_id=row.id if scheduled.kind == "client" else None,
        people_service_id=row.id if scheduled.kind == "people" else None,
        project_id=project_id,
        run_log_id=run_log_id,
        action=action,
        scheduled_date=occurrence.scheduled_date if occurrence else row.next_start_date,
        previous_next_start_date=row.next_start_date,
        previous_next_due_date=row.next_due_date,
        previous_target_delivery_date=row.target_delivery_date,
        new_next_start_date=occurrence.next_start_date if occurrence else row.next_start_date,
        new_next_due_date=occurrence.next_due_date if occurrence else row.next_due_date,
        new_target_delivery_date=occurrence.next_target_delivery_date if occurrence else row.target_delivery_date,
        frequency=occurrence.frequency if occurrence else row.frequency,
        notes=notes,
    )
    db.add(entry)
    return entry


def _advance_schedule(scheduled: ScheduledService, occurrence: NextOccurrence) -> None:
    row = scheduled.row
    row.next_start_date = occurrence.next_start_date
    if not scheduled.is_companies_house:
        row.next_due_date = occurrence.next_due_date
        row.target_delivery_date = occurrence.next_target_delivery_date


def _create_project(
    db: Session,
    scheduled: ScheduledService,
    occurrence: NextOccurrence,
    now: datetime,
) -> Project:
    service = scheduled.service
    project_type = None
    if service.project_type_id is not None:
        project_type = db.query(ProjectType).filter(ProjectType.id == service.project_type_id).first()
    if project_type is None or not project_type.active:
        raise SchedulingConfigurationError(
            f"Service '{service.name}' has no active project type",
            error_type="missing_project_type",
        )
    resolver = StageResolver(db, project_type.id)
    if not resolver.stages:
        raise SchedulingConfigurationError(
            f"Project type '{project_type.name}' has no stages",
            error_type="missing_stages",
        )
    first_stage = resolver.first()
    if scheduled.client is None:
        raise SchedulingConfigurationError(
            "Service is not linked to a client to file the project under",
            error_type="missing_client",
        )
    assignee_id = _resolve_assignee(db, scheduled, first_stage)

    if project_type.single_project_per_client:
        closed = _archive_previous_projects(db, scheduled.client.id, project_type.id, now)
        if closed:
            logger.info(
                "scheduling_projects_auto_closed",
                client_id=str(scheduled.client.id),
                project_type_id=str(project_type.id),
                count=len(closed),
            )

    project = Project(
        project_type_id=project_type.id,
        client_id=scheduled.client.id,
        person_id=scheduled.person.id if scheduled.person is not None else None,
        client_service_id=scheduled.row.id if scheduled.kind == "client" else None,
        people_service_id=scheduled.row.id if scheduled.kind == "people" else None,
        description=f"{service.name} - {scheduled.owner_label}",
        current_status=first_stage.name,
        current_assignee_id=assignee_id,
        project_owner_id=scheduled.row.service_owner_id or assignee_id,
        project_month=occurrence.scheduled_date.strftime("%d/%m/%Y"),
        due_date=occurrence.due_date,
        target_delivery_date=occurrence.target_delivery_date,
        created_at=now,
        updated_at=now,
    )
    db.add(project)
    db.flush()
    db.add(
        ProjectChronology(
            project_id=project.id,
            from_status=None,
            to_status=first_stage.name,
            change_reason="Project created",
            assignee_id=assignee_id,
            notes="Created by the scheduling run",
            timestamp=now,
        )
    )
    return project


def process_due_service(
    db: Session,
    scheduled: ScheduledService,
    *,
    as_of: date,
    run_log_id: Optional[uuid.UUID] = None,
    now: Optional[datetime] = None,
) -> ServiceOutcome:
    """Apply one scheduling decision for a service. Raises SchedulingError subclasses; never commits."""
    now = now or utcnow()
    row = scheduled.row
    outcome = ServiceOutcome(kind=scheduled.kind, service_row_id=row.id, found_due=is_due(row, as_of))

    active = scheduled.service is not None and bool(scheduled.service.is_active)
    decision = compute_next_occurrence(row, as_of, companies_house=scheduled.is_companies_house, active=active)
    if isinstance(decision, SchedulingSkip):
        outcome.skip_reason = decision.reason
        if decision.reason == "ch_date_missing":
            outcome.ch_skipped = True
            _record_history(db, scheduled, "skipped", run_log_id=run_log_id, notes=decision.detail)
        return outcome

    if already_created(db, scheduled, decision.scheduled_date):
        _record_history(
            db,
            scheduled,
            "rescheduled",
            occurrence=decision,
            run_log_id=run_log_id,
            notes="Project already created for this date; schedule advanced only",
        )
        _advance_schedule(scheduled, decision)
        outcome.rescheduled = True
        outcome.skip_reason = "duplicate"
        db.flush()
        return outcome

    project = _create_project(db, scheduled, decision, now)
    _record_history(
        db,
        scheduled,
        "created",
        occurrence=decision,
        project_id=project.id,
        run_log_id=run_log_id,
        notes=f"Created project '{project.description}'",
    )
    _advance_schedule(scheduled, decision)
    db.flush()

    outcome.project_created = True
    outcome.project_type_id = project.project_type_id
    outcome.rescheduled = True
    outcome.project_id = project.id
    logger.info(
        "scheduling_project_created",
        project_id=str(project.id),
        service_kind=scheduled.kind,
        service_row_id=str(row.id),
        scheduled_date=decision.scheduled_date.isoformat(),
        next_start_date=decision.next_start_date.isoformat(),
    )
    return outcome


def schedulable_rows(db: Session, kind: str, *columns):
    """Query over active service rows of an active catalogue service whose client or person is not NLAC."""
    if kind == "client":
        return (
            db.query(*(columns or (ClientService,)))
            .join(Client, Client.id == ClientService.client_id)
            .join(Service, Service.id == ClientService.service_id)
            .filter(
                ClientService.is_active.is_(True),
                Service.is_active.is_(True),
                Client.client_status != "nlac",
            )
        )
    return (
        db.query(*(columns or (PeopleService,)))
        .join(Person, Person.id == PeopleService.person_id)
        .join(Service, Service.id == PeopleService.service_id)
        .filter(
            PeopleService.is_active.is_(True),
            Service.is_active.is_(True),
            Person.status != "nlac",
        )
    )


def overdue_services(db: Session, as_of: date, calendar: Optional[WorkingCalendar] = None) -> List[dict]:
    """Services the scheduler would pick up whose start date has already passed."""
    results: List[dict] = []
    for kind, model in (("client", ClientService), ("people", PeopleService)):
        rows = (
            schedulable_rows(db, kind)
            .filter(model.next_start_date.isnot(None), model.next_start_date < as_of)
            .order_by(model.next_start_date.asc())
            .all()
        )
        for row in rows:
            start = datetime.combine(row.next_start_date, time.min)
            end = datetime.combine(as_of, time.min)
            hours = business_hours_between(start, end, calendar)
            results.append(
                {
                    "kind": kind,
                    "id": str(row.id),
                    "service_id": str(row.service_id),
                    "frequency": row.frequency,
                    "next_start_date": row.next_start_date.isoformat(),
                    "days_overdue": (as_of - row.next_start_date).days,
                    "business_hours_overdue": hours,
                    "business_time_overdue": format_business_hours(hours, calendar),
                }
            )
    results.sort(key=lambda r: r["days_overdue"], reverse=True)
    return results
