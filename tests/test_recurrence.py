from datetime import date, datetime

import pytest
import pytz

from practicehub.models.models import (
    Client,
    ClientService,
    ClientServiceRoleAssignment,
    Project,
    ProjectChronology,
    ProjectSchedulingHistory,
    User,
    WorkRole,
)
from practicehub.services.errors import SchedulingConfigurationError
from practicehub.services.frequency import advance, normalize_frequency
from practicehub.services.recurrence import (
    NextOccurrence,
    SchedulingSkip,
    compute_next_occurrence,
    load_scheduled_service,
    overdue_services,
    process_due_service,
)


NOW = datetime(2024, 1, 1, 2, 0, tzinfo=pytz.UTC)


def service_row(**kwargs):
    values = dict(
        frequency="monthly",
        next_start_date=date(2024, 1, 1),
        next_due_date=date(2024, 1, 31),
        target_delivery_date=date(2024, 1, 25),
        is_active=True,
    )
    values.update(kwargs)
    return ClientService(**values)


def test_monthly_service_rolls_every_date_forward():
    decision = compute_next_occurrence(service_row(), date(2024, 1, 1), companies_house=False)

    assert isinstance(decision, NextOccurrence)
    assert decision.scheduled_date == date(2024, 1, 1)
    assert decision.next_start_date == date(2024, 2, 1)
    assert decision.next_due_date == date(2024, 2, 29)
    assert decision.next_target_delivery_date == date(2024, 2, 25)


def test_future_start_is_not_due():
    decision = compute_next_occurrence(service_row(), date(2023, 12, 31), companies_house=False)

    assert decision == SchedulingSkip("not_due")


def test_inactive_service_is_skipped():
    decision = compute_next_occurrence(service_row(is_active=False), date(2024, 1, 1), companies_house=False)

    assert decision.reason == "inactive"


def test_companies_house_dates_are_left_alone():
    row = service_row(frequency="annually", next_due_date=date(2024, 9, 30), target_delivery_date=None)

    decision = compute_next_occurrence(row, date(2024, 1, 1), companies_house=True)

    assert decision.next_start_date == date(2025, 1, 1)
    assert decision.next_due_date == date(2024, 9, 30)
    assert decision.next_target_delivery_date is None


def test_companies_house_without_due_date_is_skipped():
    decision = compute_next_occurrence(service_row(next_due_date=None), date(2024, 1, 1), companies_house=True)

    assert decision.reason == "ch_date_missing"


@pytest.mark.parametrize(
    "missing, error_type",
    [
        ("target_delivery_date", "missing_target_delivery_date"),
        ("next_due_date", "missing_due_date"),
        ("next_start_date", "missing_start_date"),
    ],
)
def test_self_scheduled_service_needs_its_dates(missing, error_type):
    with pytest.raises(SchedulingConfigurationError) as exc:
        compute_next_occurrence(service_row(**{missing: None}), date(2024, 1, 1), companies_house=False)

    assert exc.value.error_type == error_type


@pytest.fixture
def bookkeeping(make_pipeline, make_service, user):
    project_type, stages = make_pipeline(["To do", "Done"], stage_options={"To do": {"assigned_user_id": user.id}})
    service = make_service("Monthly Bookkeeping", project_type=project_type)
    return project_type, stages, service


def run_once(db, kind, row_id, as_of=date(2024, 1, 1)):
    scheduled = load_scheduled_service(db, kind, row_id, lock=True)
    outcome = process_due_service(db, scheduled, as_of=as_of, now=NOW)
    db.commit()
    db.expire_all()
    return outcome


def test_due_service_creates_a_project(db, bookkeeping, make_client_service, user):
    project_type, stages, service = bookkeeping
    row = make_client_service(service, owner=user)

    outcome = run_once(db, "client", row.id)

    assert outcome.project_created and outcome.rescheduled
    project = db.get(Project, outcome.project_id)
    assert project.description == "Monthly Bookkeeping - Acme Widgets Ltd"
    assert project.current_status == "To do"
    assert project.project_month == "01/01/2024"
    assert project.due_date == date(2024, 1, 31)
    assert project.current_assignee_id == user.id
    created = db.query(ProjectChronology).filter(ProjectChronology.project_id == project.id).one()
    assert created.from_status is None
    assert created.to_status == "To do"
    assert created.change_reason == "Project created"

    row = db.get(ClientService, row.id)
    assert row.next_start_date == date(2024, 2, 1)
    assert row.next_due_date == date(2024, 2, 29)
    history = db.query(ProjectSchedulingHistory).filter(ProjectSchedulingHistory.client_service_id == row.id).one()
    assert history.action == "created"
    assert history.project_id == project.id
    assert (history.previous_next_start_date, history.new_next_start_date) == (date(2024, 1, 1), date(2024, 2, 1))
    assert (history.previous_next_due_date, history.new_next_due_date) == (date(2024, 1, 31), date(2024, 2, 29))


@pytest.mark.parametrize(
    "frequency, start, due, target",
    [
        ("monthly", date(2024, 2, 1), date(2024, 2, 29), date(2024, 2, 25)),
        ("quarterly", date(2024, 4, 1), date(2024, 4, 30), date(2024, 4, 25)),
        ("annually", date(2025, 1, 1), date(2025, 1, 31), date(2025, 1, 25)),
        ("annual", date(2025, 1, 1), date(2025, 1, 31), date(2025, 1, 25)),
    ],
)
def test_history_records_one_cycle_step(db, bookkeeping, make_client_service, user, frequency, start, due, target):
    project_type, stages, service = bookkeeping
    row = make_client_service(service, frequency=frequency, owner=user)

    run_once(db, "client", row.id)

    history = db.query(ProjectSchedulingHistory).one()
    assert history.frequency == normalize_frequency(frequency)
    assert (history.previous_next_start_date, history.new_next_start_date) == (date(2024, 1, 1), start)
    assert (history.previous_next_due_date, history.new_next_due_date) == (date(2024, 1, 31), due)
    assert (history.previous_target_delivery_date, history.new_target_delivery_date) == (date(2024, 1, 25), target)
    assert advance(history.previous_next_due_date, history.frequency) == history.new_next_due_date


def test_same_date_is_never_scheduled_twice(db, bookkeeping, make_client_service, user):
    project_type, stages, service = bookkeeping
    row = make_client_service(service, owner=user)
    run_once(db, "client", row.id)
    # Someone rolls the schedule back by hand
    row = db.get(ClientService, row.id)
    row.next_start_date = date(2024, 1, 1)
    row.next_due_date = date(2024, 1, 31)
    row.target_delivery_date = date(2024, 1, 25)
    db.commit()

    outcome = run_once(db, "client", row.id)

    assert not outcome.project_created
    assert outcome.rescheduled
    assert db.query(Project).count() == 1
    actions = [h.action for h in db.query(ProjectSchedulingHistory).order_by(ProjectSchedulingHistory.created_at)]
    assert sorted(actions) == ["created", "rescheduled"]
    assert db.get(ClientService, row.id).next_start_date == date(2024, 2, 1)


def test_companies_house_service_keeps_its_due_date(db, make_pipeline, make_service, make_client_service, user):
    project_type, stages = make_pipeline(["Prepare accounts", "Filed"], name="Annual Accounts")
    service = make_service("Annual Accounts", project_type=project_type, companies_house=True)
    row = make_client_service(
        service,
        frequency="annually",
        next_start_date=date(2024, 1, 1),
        next_due_date=date(2024, 9, 30),
        target_delivery_date=None,
        owner=user,
    )

    outcome = run_once(db, "client", row.id)

    assert outcome.project_created
    row = db.get(ClientService, row.id)
    assert row.next_start_date == date(2025, 1, 1)
    assert row.next_due_date == date(2024, 9, 30)
    assert db.get(Project, outcome.project_id).target_delivery_date is None


def test_companies_house_service_without_dates_records_a_skip(db, make_pipeline, make_service, make_client_service, user):
    project_type, stages = make_pipeline(["Prepare accounts"], name="Annual Accounts")
    service = make_service("Annual Accounts", project_type=project_type, companies_house=True)
    row = make_client_service(service, frequency="annually", next_due_date=None, target_delivery_date=None, owner=user)

    outcome = run_once(db, "client", row.id)

    assert outcome.ch_skipped
    assert not outcome.project_created
    history = db.query(ProjectSchedulingHistory).one()
    assert history.action == "skipped"
    assert db.get(ClientService, row.id).next_start_date == date(2024, 1, 1)


def test_role_assignment_is_used_when_there_is_no_service_owner(db, make_pipeline, make_service, make_client_service):
    role = WorkRole(name="Bookkeeper")
    bookkeeper = User(username="bookkeeper")
    db.add_all([role, bookkeeper])
    db.commit()
    project_type, stages = make_pipeline(["To do"], stage_options={"To do": {"assigned_work_role_id": role.id}})
    service = make_service(project_type=project_type)
    row = make_client_service(service)
    db.add(ClientServiceRoleAssignment(client_service_id=row.id, work_role_id=role.id, user_id=bookkeeper.id))
    db.commit()

    outcome = run_once(db, "client", row.id)

    assert db.get(Project, outcome.project_id).current_assignee_id == bookkeeper.id


def test_stage_assignee_is_the_last_resort(db, bookkeeping, make_client_service, user):
    project_type, stages, service = bookkeeping
    row = make_client_service(service)

    outcome = run_once(db, "client", row.id)

    assert db.get(Project, outcome.project_id).current_assignee_id == user.id


def test_no_assignee_at_all_is_a_configuration_error(db, make_pipeline, make_service, make_client_service):
    project_type, stages = make_pipeline(["To do"])
    service = make_service(project_type=project_type)
    row = make_client_service(service)
    scheduled = load_scheduled_service(db, "client", row.id)

    with pytest.raises(SchedulingConfigurationError) as exc:
        process_due_service(db, scheduled, as_of=date(2024, 1, 1), now=NOW)

    assert exc.value.error_type == "missing_owner"


def test_service_without_project_type(db, make_service, make_client_service, user):
    service = make_service("Ad hoc advice")
    row = make_client_service(service, owner=user)
    scheduled = load_scheduled_service(db, "client", row.id)

    with pytest.raises(SchedulingConfigurationError) as exc:
        process_due_service(db, scheduled, as_of=date(2024, 1, 1), now=NOW)

    assert exc.value.error_type == "missing_project_type"


def test_single_project_per_client_archives_the_previous_one(
    db, make_pipeline, make_service, make_client_service, make_project, user
):
    project_type, stages = make_pipeline(["To do", "Done"], name="Payroll", single_project_per_client=True)
    service = make_service("Payroll", project_type=project_type)
    previous = make_project(project_type, "To do", description="Payroll - Acme Widgets Ltd")
    row = make_client_service(service, owner=user)

    outcome = run_once(db, "client", row.id)

    old = db.get(Project, previous.id)
    assert old.archived is True
    assert old.inactive is True
    assert old.completion_status == "completed_unsuccessfully"
    closing = db.query(ProjectChronology).filter(ProjectChronology.project_id == old.id).one()
    assert closing.change_reason == "Archived (Auto-closed)"
    assert db.get(Project, outcome.project_id).inactive is False


def test_personal_service_is_filed_under_the_person(db, make_pipeline, make_service, make_people_service, user):
    project_type, stages = make_pipeline(["Gather records", "Submitted"], name="Self Assessment")
    service = make_service("Self Assessment", project_type=project_type, personal=True)
    row = make_people_service(service, full_name="Jo Bloggs", owner=user)

    outcome = run_once(db, "people", row.id, as_of=date(2024, 4, 6))

    project = db.get(Project, outcome.project_id)
    assert project.description == "Self Assessment - Jo Bloggs"
    assert project.people_service_id == row.id
    assert project.person_id == row.person_id
    assert db.query(ProjectSchedulingHistory).one().people_service_id == row.id


def test_overdue_services_report(db, bookkeeping, make_client_service, user):
    project_type, stages, service = bookkeeping
    make_client_service(service, next_start_date=date(2024, 3, 1), owner=user)
    make_client_service(service, next_start_date=date(2024, 3, 20), owner=user)

    report = overdue_services(db, date(2024, 3, 4))

    assert len(report) == 1
    assert report[0]["days_overdue"] == 3
    # Friday 1 March is the only working day before Monday 4 March
    assert report[0]["business_hours_overdue"] == 8.5


def test_overdue_report_leaves_out_services_the_scheduler_skips(db, bookkeeping, make_service, make_client_service, user):
    project_type, stages, service = bookkeeping
    retired = make_service("Payroll (retired)", project_type=project_type, active=False)
    gone = Client(name="Former Client Ltd", client_status="nlac", nlac_reason="Moved accountant")
    db.add(gone)
    db.commit()
    kept = make_client_service(service, next_start_date=date(2024, 3, 1), owner=user)
    make_client_service(retired, next_start_date=date(2024, 3, 1), owner=user)
    make_client_service(service, next_start_date=date(2024, 3, 1), client=gone, owner=user)

    report = overdue_services(db, date(2024, 3, 4))

    assert [r["id"] for r in report] == [str(kept.id)]
