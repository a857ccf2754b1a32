"""Pytest fixtures: a throwaway SQLite database and builders for pipeline data."""
from datetime import date, datetime

import pytest
import pytz
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from practicehub.db import Base
from practicehub.models.models import (
    ChangeReason,
    Client,
    ClientService,
    KanbanStage,
    PeopleService,
    Person,
    Project,
    ProjectType,
    ReasonCustomField,
    Service,
    StageApproval,
    StageApprovalField,
    StageReasonMap,
    User,
)


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=pytz.UTC)


@pytest.fixture
def engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'practicehub-test.db'}",
        future=True,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def user(db):
    u = User(username="preparer", email="preparer@example.com", display_name="Pat Preparer")
    db.add(u)
    db.commit()
    return u


@pytest.fixture
def make_pipeline(db):
    """Build a project type with ordered stages.

    ``make_pipeline(["Not started", "In review", "Done"], final={"Done": "completed_successfully"})``
    """

    def _make(stage_names, name="Monthly Bookkeeping", final=None, single_project_per_client=False, stage_options=None):
        final = final or {}
        stage_options = stage_options or {}
        project_type = ProjectType(name=name, single_project_per_client=single_project_per_client)
        db.add(project_type)
        db.flush()
        stages = {}
        for order, stage_name in enumerate(stage_names):
            stage = KanbanStage(
                project_type_id=project_type.id,
                name=stage_name,
                order=order,
                can_be_final_stage=stage_name in final,
                completion_status=final.get(stage_name),
                **stage_options.get(stage_name, {}),
            )
            db.add(stage)
            stages[stage_name] = stage
        db.commit()
        return project_type, stages

    return _make


@pytest.fixture
def make_reason(db):
    """Create a change reason usable to leave each of ``from_stages``."""

    def _make(project_type, text, from_stages, approval=None, custom_fields=None):
        reason = ChangeReason(
            project_type_id=project_type.id,
            reason=text,
            stage_approval_id=approval.id if approval is not None else None,
        )
        db.add(reason)
        db.flush()
        for stage in from_stages:
            db.add(StageReasonMap(stage_id=stage.id, reason_id=reason.id))
        for order, spec in enumerate(custom_fields or []):
            db.add(ReasonCustomField(reason_id=reason.id, order=order, **spec))
        db.commit()
        return reason

    return _make


@pytest.fixture
def make_approval(db):
    def _make(project_type, name, fields):
        approval = StageApproval(project_type_id=project_type.id, name=name)
        db.add(approval)
        db.flush()
        for order, spec in enumerate(fields):
            db.add(StageApprovalField(stage_approval_id=approval.id, order=order, **spec))
        db.commit()
        return approval

    return _make


@pytest.fixture
def client_record(db):
    c = Client(name="Acme Widgets Ltd", client_type="company", company_number="01234567")
    db.add(c)
    db.commit()
    return c


@pytest.fixture
def make_project(db, client_record):
    def _make(project_type, status, created_at=None, **kwargs):
        project = Project(
            project_type_id=project_type.id,
            client_id=kwargs.pop("client_id", client_record.id),
            description=kwargs.pop("description", "Monthly Bookkeeping - Acme Widgets Ltd"),
            current_status=status,
            created_at=created_at or utc(2024, 3, 4, 9, 0),
            **kwargs,
        )
        db.add(project)
        db.commit()
        return project

    return _make


@pytest.fixture
def make_service(db):
    def _make(name="Monthly Bookkeeping", project_type=None, companies_house=False, personal=False, active=True):
        service = Service(
            name=name,
            project_type_id=project_type.id if project_type is not None else None,
            is_companies_house_connected=companies_house,
            is_personal_service=personal,
            is_active=active,
        )
        db.add(service)
        db.commit()
        return service

    return _make


@pytest.fixture
def make_client_service(db, client_record):
    def _make(service, frequency="monthly", next_start_date=date(2024, 1, 1), next_due_date=date(2024, 1, 31),
              target_delivery_date=date(2024, 1, 25), client=None, owner=None, active=True):
        row = ClientService(
            client_id=(client or client_record).id,
            service_id=service.id,
            frequency=frequency,
            next_start_date=next_start_date,
            next_due_date=next_due_date,
            target_delivery_date=target_delivery_date,
            service_owner_id=owner.id if owner is not None else None,
            is_active=active,
        )
        db.add(row)
        db.commit()
        return row

    return _make


@pytest.fixture
def make_people_service(db, client_record):
    def _make(service, full_name="Jo Bloggs", **kwargs):
        person = Person(full_name=full_name, client_id=kwargs.pop("client_id", client_record.id),
                        status=kwargs.pop("status", "active"))
        db.add(person)
        db.flush()
        owner = kwargs.pop("owner", None)
        row = PeopleService(
            person_id=person.id,
            service_id=service.id,
            frequency=kwargs.pop("frequency", "annually"),
            next_start_date=kwargs.pop("next_start_date", date(2024, 4, 6)),
            next_due_date=kwargs.pop("next_due_date", date(2025, 1, 31)),
            target_delivery_date=kwargs.pop("target_delivery_date", date(2024, 12, 31)),
            service_owner_id=owner.id if owner is not None else None,
            **kwargs,
        )
        db.add(row)
        db.commit()
        return row

    return _make
