"""
Seed the local database with a demo bookkeeping pipeline, staff, a client and
its recurring services.

Usage:
  python scripts/seed_demo_data.py

This script is idempotent: running it multiple times will reuse the same
records based on unique fields (username for users, name for project types,
clients and services).
"""
import sys
import os
from datetime import date

# Add parent directory to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from practicehub.db import SessionLocal, Base, engine
from practicehub.models.models import (
    ChangeReason,
    Client,
    ClientService,
    ClientServiceRoleAssignment,
    KanbanStage,
    Person,
    PeopleService,
    ProjectType,
    ReasonCustomField,
    Service,
    StageApproval,
    StageApprovalField,
    StageReasonMap,
    User,
    WorkRole,
)


def ensure_user(session, username: str, email: str, display_name: str) -> User:
    user = session.query(User).filter(User.username == username).first()
    if user:
        return user
    user = User(username=username, email=email, display_name=display_name)
    session.add(user)
    session.flush()
    return user


def ensure_role(session, name: str, description: str = "") -> WorkRole:
    role = session.query(WorkRole).filter(WorkRole.name == name).first()
    if role:
        return role
    role = WorkRole(name=name, description=description or name)
    session.add(role)
    session.flush()
    return role


def ensure_pipeline(session, manager: User, bookkeeper_role: WorkRole) -> ProjectType:
    project_type = session.query(ProjectType).filter(ProjectType.name == "Monthly Bookkeeping").first()
    if project_type:
        return project_type

    project_type = ProjectType(name="Monthly Bookkeeping", description="Monthly bookkeeping and VAT preparation")
    session.add(project_type)
    session.flush()

    stage_specs = [
        ("Awaiting records", "#94a3b8", {"assigned_work_role_id": bookkeeper_role.id, "max_instance_time": 17.0}),
        ("In progress", "#3b82f6", {"assigned_work_role_id": bookkeeper_role.id, "max_instance_time": 25.5}),
        ("Manager review", "#f59e0b", {"assigned_user_id": manager.id, "max_instance_time": 8.5, "max_total_time": 17.0}),
        ("Completed", "#22c55e", {"can_be_final_stage": True, "completion_status": "completed_successfully"}),
    ]
    stages = {}
    for order, (name, color, extra) in enumerate(stage_specs):
        stage = KanbanStage(project_type_id=project_type.id, name=name, order=order, color=color, **extra)
        session.add(stage)
        stages[name] = stage
    session.flush()

    review_gate = StageApproval(project_type_id=project_type.id, name="Ready for manager review")
    session.add(review_gate)
    session.flush()
    session.add_all(
        [
            StageApprovalField(
                stage_approval_id=review_gate.id,
                field_name="Bank accounts reconciled?",
                field_type="boolean",
                expected_value_boolean=True,
                is_required=True,
                order=0,
            ),
            StageApprovalField(
                stage_approval_id=review_gate.id,
                field_name="Unexplained items",
                field_type="number",
                comparison_type="equal_to",
                expected_value_number=0,
                order=1,
            ),
            StageApprovalField(
                stage_approval_id=review_gate.id,
                field_name="Checks completed",
                field_type="multi_select",
                options=["VAT", "Payroll", "Fixed assets"],
                expected_values=["VAT"],
                order=2,
            ),
        ]
    )

    def reason(text, from_stage, approval=None):
        row = ChangeReason(
            project_type_id=project_type.id,
            reason=text,
            stage_approval_id=approval.id if approval else None,
        )
        session.add(row)
        session.flush()
        session.add(StageReasonMap(stage_id=stages[from_stage].id, reason_id=row.id))
        return row

    reason("Records received", "Awaiting records")
    reason("Ready for review", "In progress", approval=review_gate)
    reason("Queries raised", "Manager review")
    signed_off = reason("Signed off", "Manager review")
    session.add(
        ReasonCustomField(
            reason_id=signed_off.id,
            field_name="VAT return submitted on",
            field_type="date",
            is_required=True,
            order=0,
        )
    )
    session.flush()
    return project_type


def ensure_service(session, name: str, project_type: ProjectType, **kwargs) -> Service:
    service = session.query(Service).filter(Service.name == name).first()
    if service:
        return service
    service = Service(name=name, project_type_id=project_type.id, **kwargs)
    session.add(service)
    session.flush()
    return service


def ensure_client(session, name: str, company_number: str) -> Client:
    client = session.query(Client).filter(Client.name == name).first()
    if client:
        return client
    client = Client(name=name, client_type="company", company_number=company_number)
    session.add(client)
    session.flush()
    return client


def main():
    # Ensure tables exist for local runs
    if engine.url.drivername.startswith("sqlite"):
        os.makedirs("var", exist_ok=True)
    Base.metadata.create_all(bind=engine)

    session = SessionLocal()
    try:
        manager = ensure_user(session, "amanager", "a.manager@example.com", "Alex Manager")
        bookkeeper = ensure_user(session, "bkeeper", "b.keeper@example.com", "Bea Keeper")
        role = ensure_role(session, "Bookkeeper", "Prepares monthly bookkeeping")
        project_type = ensure_pipeline(session, manager, role)

        bookkeeping = ensure_service(session, "Monthly Bookkeeping", project_type)
        accounts = ensure_service(session, "Annual Accounts", project_type, is_companies_house_connected=True)
        tax_return = ensure_service(session, "Self Assessment", project_type, is_personal_service=True)

        client = ensure_client(session, "Acme Widgets Ltd", "01234567")
        today = date.today()

        if not session.query(ClientService).filter(ClientService.client_id == client.id).first():
            monthly = ClientService(
                client_id=client.id,
                service_id=bookkeeping.id,
                frequency="monthly",
                next_start_date=today,
                next_due_date=date(today.year, today.month, 28),
                target_delivery_date=date(today.year, today.month, 21),
            )
            session.add(monthly)
            session.flush()
            session.add(ClientServiceRoleAssignment(client_service_id=monthly.id, work_role_id=role.id, user_id=bookkeeper.id))
            # Dates for Companies House services arrive from the filing history
            session.add(
                ClientService(
                    client_id=client.id,
                    service_id=accounts.id,
                    frequency="annually",
                    next_start_date=today,
                    next_due_date=None,
                    service_owner_id=manager.id,
                )
            )

        if not session.query(Person).filter(Person.full_name == "Jo Bloggs").first():
            person = Person(full_name="Jo Bloggs", email="jo@example.com", client_id=client.id)
            session.add(person)
            session.flush()
            session.add(
                PeopleService(
                    person_id=person.id,
                    service_id=tax_return.id,
                    frequency="annually",
                    next_start_date=date(today.year, 4, 6),
                    next_due_date=date(today.year + 1, 1, 31),
                    target_delivery_date=date(today.year, 12, 31),
                    service_owner_id=bookkeeper.id,
                )
            )

        session.commit()
        print("Seed complete:")
        print(f"  Users: {session.query(User).count()}")
        print(f"  Project types: {session.query(ProjectType).count()}")
        print(f"  Client services: {session.query(ClientService).count()}")
        print(f"  People services: {session.query(PeopleService).count()}")
    except Exception as e:
        session.rollback()
        print(f"[ERROR] Seed failed: {e}")
        raise
    finally:
        session.close()


if __name__ == "__main__":
    main()
