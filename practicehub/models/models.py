import uuid
from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy import (
    String,
    DateTime,
    Date,
    Boolean,
    ForeignKey,
    Integer,
    Float,
    JSON,
    UniqueConstraint,
    CheckConstraint,
    Text,
    Index,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, Mapped, mapped_column

from ..db import Base


def uuid_pk() -> Mapped[uuid.UUID]:
    return mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _one_populated(*columns: str) -> str:
    """SQL expression asserting exactly one of ``columns`` is non-null."""
    terms = " + ".join(f"(CASE WHEN {c} IS NOT NULL THEN 1 ELSE 0 END)" for c in columns)
    return f"({terms}) = 1"


# Field types shared by approval fields and reason custom fields
FIELD_TYPES = ("boolean", "number", "short_text", "long_text", "single_select", "multi_select", "date")
COMPARISON_TYPES = ("equal_to", "less_than", "greater_than")
DATE_COMPARISON_TYPES = ("before", "after", "between", "exact")


class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = uuid_pk()
    username: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), unique=True)
    display_name: Mapped[Optional[str]] = mapped_column(String(255))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class WorkRole(Base):
    __tablename__ = "work_roles"

    id: Mapped[uuid.UUID] = uuid_pk()
    name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(255))


# =====================
# Clients & people
# =====================


class Client(Base):
    __tablename__ = "clients"

    id: Mapped[uuid.UUID] = uuid_pk()
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    client_type: Mapped[Optional[str]] = mapped_column(String(50))  # company|individual
    company_number: Mapped[Optional[str]] = mapped_column(String(20))
    client_status: Mapped[str] = mapped_column(String(20), default="active")  # active|nlac
    nlac_reason: Mapped[Optional[str]] = mapped_column(String(255))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class Person(Base):
    __tablename__ = "people"

    id: Mapped[uuid.UUID] = uuid_pk()
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255))
    status: Mapped[str] = mapped_column(String(20), default="active")  # active|inactive|nlac
    # The client a personal service's projects are filed under
    client_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("clients.id", ondelete="SET NULL"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    client = relationship("Client")


# =====================
# Pipeline configuration
# =====================


class ProjectType(Base):
    __tablename__ = "project_types"

    id: Mapped[uuid.UUID] = uuid_pk()
    name: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    active: Mapped[bool] = mapped_column(Boolean, default=True)
    # When set, a new project archives the client's other active projects of this type
    single_project_per_client: Mapped[bool] = mapped_column(Boolean, default=False)

    stages = relationship("KanbanStage", back_populates="project_type", order_by="KanbanStage.order")
    reasons = relationship("ChangeReason", back_populates="project_type")


class Service(Base):
    __tablename__ = "services"

    id: Mapped[uuid.UUID] = uuid_pk()
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    project_type_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("project_types.id", ondelete="SET NULL"))
    is_companies_house_connected: Mapped[bool] = mapped_column(Boolean, default=False)
    is_personal_service: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    project_type = relationship("ProjectType")


class StageApproval(Base):
    __tablename__ = "stage_approvals"

    id: Mapped[uuid.UUID] = uuid_pk()
    project_type_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("project_types.id", ondelete="CASCADE"))
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)

    fields = relationship(
        "StageApprovalField",
        back_populates="stage_approval",
        order_by="StageApprovalField.order",
        cascade="all, delete-orphan",
    )


class StageApprovalField(Base):
    __tablename__ = "stage_approval_fields"
    __table_args__ = (
        CheckConstraint(
            "field_type <> 'boolean' OR expected_value_boolean IS NOT NULL",
            name="ck_approval_field_boolean_expected",
        ),
        CheckConstraint(
            "field_type <> 'number' OR (comparison_type IS NOT NULL AND expected_value_number IS NOT NULL)",
            name="ck_approval_field_number_expected",
        ),
        CheckConstraint(
            "field_type <> 'long_text' OR (expected_value_boolean IS NULL AND comparison_type IS NULL "
            "AND expected_value_number IS NULL AND date_comparison_type IS NULL)",
            name="ck_approval_field_long_text_no_expectation",
        ),
    )

    id: Mapped[uuid.UUID] = uuid_pk()
    stage_approval_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("stage_approvals.id", ondelete="CASCADE"), index=True)
    field_name: Mapped[str] = mapped_column(String(255), nullable=False)
    field_type: Mapped[str] = mapped_column(String(20), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    placeholder: Mapped[Optional[str]] = mapped_column(String(255))
    is_required: Mapped[bool] = mapped_column(Boolean, default=False)
    order: Mapped[int] = mapped_column(Integer, default=0)
    # Expected-value contract, populated according to field_type
    expected_value_boolean: Mapped[Optional[bool]] = mapped_column(Boolean)
    comparison_type: Mapped[Optional[str]] = mapped_column(String(20))  # equal_to|less_than|greater_than
    expected_value_number: Mapped[Optional[float]] = mapped_column(Float)
    options: Mapped[Optional[list]] = mapped_column(JSON(none_as_null=True))
    expected_values: Mapped[Optional[list]] = mapped_column(JSON(none_as_null=True))
    date_comparison_type: Mapped[Optional[str]] = mapped_column(String(20))  # before|after|between|exact
    expected_date: Mapped[Optional[date]] = mapped_column(Date)
    expected_date_end: Mapped[Optional[date]] = mapped_column(Date)
    conditional_logic: Mapped[Optional[dict]] = mapped_column(JSON(none_as_null=True))

    stage_approval = relationship("StageApproval", back_populates="fields")


class StageApprovalResponse(Base):
    __tablename__ = "stage_approval_responses"
    __table_args__ = (
        UniqueConstraint("project_id", "field_id", name="uq_approval_response_project_field"),
        CheckConstraint(
            _one_populated(
                "value_boolean",
                "value_number",
                "value_short_text",
                "value_long_text",
                "value_single_select",
                "value_multi_select",
                "value_date",
            ),
            name="ck_approval_response_single_value",
        ),
    )

    id: Mapped[uuid.UUID] = uuid_pk()
    project_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("projects.id", ondelete="CASCADE"), index=True)
    field_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("stage_approval_fields.id", ondelete="CASCADE"))
    value_boolean: Mapped[Optional[bool]] = mapped_column(Boolean)
    value_number: Mapped[Optional[float]] = mapped_column(Float)
    value_short_text: Mapped[Optional[str]] = mapped_column(String(255))
    value_long_text: Mapped[Optional[str]] = mapped_column(Text)
    value_single_select: Mapped[Optional[str]] = mapped_column(String(255))
    value_multi_select: Mapped[Optional[list]] = mapped_column(JSON(none_as_null=True))
    value_date: Mapped[Optional[date]] = mapped_column(Date)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    field = relationship("StageApprovalField")


class KanbanStage(Base):
    __tablename__ = "kanban_stages"
    __table_args__ = (
        UniqueConstraint("project_type_id", "order", name="uq_stage_project_type_order"),
        UniqueConstraint("project_type_id", "name", name="uq_stage_project_type_name"),
    )

    id: Mapped[uuid.UUID] = uuid_pk()
    project_type_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("project_types.id", ondelete="CASCADE"), index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    order: Mapped[int] = mapped_column(Integer, nullable=False)
    color: Mapped[Optional[str]] = mapped_column(String(20))
    assigned_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    assigned_work_role_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("work_roles.id", ondelete="SET NULL"))
    # Business hours before the stage is overdue (per visit / cumulative)
    max_instance_time: Mapped[Optional[float]] = mapped_column(Float)
    max_total_time: Mapped[Optional[float]] = mapped_column(Float)
    stage_approval_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("stage_approvals.id", ondelete="SET NULL"))
    can_be_final_stage: Mapped[bool] = mapped_column(Boolean, default=False)
    completion_status: Mapped[Optional[str]] = mapped_column(String(50))  # completed_successfully|completed_unsuccessfully

    project_type = relationship("ProjectType", back_populates="stages")
    stage_approval = relationship("StageApproval")
    reason_maps = relationship("StageReasonMap", back_populates="stage", cascade="all, delete-orphan")


class ChangeReason(Base):
    __tablename__ = "change_reasons"

    id: Mapped[uuid.UUID] = uuid_pk()
    project_type_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("project_types.id", ondelete="CASCADE"), index=True)
    reason: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    stage_approval_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("stage_approvals.id", ondelete="SET NULL"))

    project_type = relationship("ProjectType", back_populates="reasons")
    stage_approval = relationship("StageApproval")
    custom_fields = relationship(
        "ReasonCustomField",
        back_populates="reason",
        order_by="ReasonCustomField.order",
        cascade="all, delete-orphan",
    )


class StageReasonMap(Base):
    __tablename__ = "stage_reason_maps"
    __table_args__ = (UniqueConstraint("stage_id", "reason_id", name="uq_stage_reason"),)

    id: Mapped[uuid.UUID] = uuid_pk()
    stage_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("kanban_stages.id", ondelete="CASCADE"), index=True)
    reason_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("change_reasons.id", ondelete="CASCADE"))

    stage = relationship("KanbanStage", back_populates="reason_maps")
    reason = relationship("ChangeReason")


class ReasonCustomField(Base):
    __tablename__ = "reason_custom_fields"

    id: Mapped[uuid.UUID] = uuid_pk()
    reason_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("change_reasons.id", ondelete="CASCADE"), index=True)
    field_name: Mapped[str] = mapped_column(String(255), nullable=False)
    field_type: Mapped[str] = mapped_column(String(20), nullable=False)  # boolean|number|short_text|long_text|multi_select|date
    description: Mapped[Optional[str]] = mapped_column(Text)
    placeholder: Mapped[Optional[str]] = mapped_column(String(255))
    is_required: Mapped[bool] = mapped_column(Boolean, default=False)
    options: Mapped[Optional[list]] = mapped_column(JSON(none_as_null=True))
    order: Mapped[int] = mapped_column(Integer, default=0)

    reason = relationship("ChangeReason", back_populates="custom_fields")


# =====================
# Projects
# =====================


class Project(Base):
    __tablename__ = "projects"
    __table_args__ = (
        Index("ix_projects_type_status", "project_type_id", "current_status"),
    )

    id: Mapped[uuid.UUID] = uuid_pk()
    project_type_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("project_types.id"), nullable=False)
    client_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("clients.id"), nullable=False, index=True)
    person_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("people.id", ondelete="SET NULL"))
    client_service_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("client_services.id", ondelete="SET NULL"))
    people_service_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("people_services.id", ondelete="SET NULL"))
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    # Stage name; resolved against the project type's stages at evaluation time
    current_status: Mapped[str] = mapped_column(String(255), nullable=False)
    current_assignee_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    project_owner_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    project_month: Mapped[Optional[str]] = mapped_column(String(10))  # dd/mm/yyyy
    due_date: Mapped[Optional[date]] = mapped_column(Date)
    target_delivery_date: Mapped[Optional[date]] = mapped_column(Date)
    inactive: Mapped[bool] = mapped_column(Boolean, default=False)
    inactive_reason: Mapped[Optional[str]] = mapped_column(String(255))
    inactive_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    is_benched: Mapped[bool] = mapped_column(Boolean, default=False)
    bench_reason: Mapped[Optional[str]] = mapped_column(String(255))
    archived: Mapped[bool] = mapped_column(Boolean, default=False)
    completion_status: Mapped[Optional[str]] = mapped_column(String(50))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    project_type = relationship("ProjectType")
    client = relationship("Client")
    chronology = relationship("ProjectChronology", back_populates="project", order_by="ProjectChronology.timestamp")


class ProjectChronology(Base):
    """Append-only; rows are never updated once written."""

    __tablename__ = "project_chronology"

    id: Mapped[uuid.UUID] = uuid_pk()
    project_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("projects.id", ondelete="CASCADE"), index=True)
    from_status: Mapped[Optional[str]] = mapped_column(String(255))
    to_status: Mapped[str] = mapped_column(String(255), nullable=False)
    change_reason: Mapped[Optional[str]] = mapped_column(String(255))
    assignee_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    changed_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    timestamp: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), default=utcnow)
    time_in_previous_stage: Mapped[Optional[int]] = mapped_column(Integer)  # wall-clock minutes
    business_hours_in_previous_stage: Mapped[Optional[float]] = mapped_column(Float)
    answers: Mapped[Optional[dict]] = mapped_column(JSON(none_as_null=True))

    project = relationship("Project", back_populates="chronology")


class ReasonFieldResponse(Base):
    __tablename__ = "reason_field_responses"
    __table_args__ = (
        UniqueConstraint("chronology_id", "custom_field_id", name="uq_reason_response_chronology_field"),
        CheckConstraint(
            _one_populated(
                "value_boolean",
                "value_number",
                "value_short_text",
                "value_long_text",
                "value_multi_select",
                "value_date",
            ),
            name="ck_reason_response_single_value",
        ),
    )

    id: Mapped[uuid.UUID] = uuid_pk()
    chronology_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("project_chronology.id", ondelete="CASCADE"), index=True)
    custom_field_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("reason_custom_fields.id", ondelete="CASCADE"))
    field_type: Mapped[str] = mapped_column(String(20), nullable=False)
    value_boolean: Mapped[Optional[bool]] = mapped_column(Boolean)
    value_number: Mapped[Optional[float]] = mapped_column(Float)
    value_short_text: Mapped[Optional[str]] = mapped_column(String(255))
    value_long_text: Mapped[Optional[str]] = mapped_column(Text)
    value_multi_select: Mapped[Optional[list]] = mapped_column(JSON(none_as_null=True))
    value_date: Mapped[Optional[date]] = mapped_column(Date)


# =====================
# Client tasks (automated stage triggers)
# =====================


class ClientProjectTaskTemplate(Base):
    __tablename__ = "client_project_task_templates"

    id: Mapped[uuid.UUID] = uuid_pk()
    project_type_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("project_types.id", ondelete="CASCADE"), index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    instructions: Mapped[Optional[str]] = mapped_column(Text)
    on_completion_stage_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("kanban_stages.id", ondelete="SET NULL"))
    on_completion_reason_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("change_reasons.id", ondelete="SET NULL"))
    # [{"if_stage_id": ..., "then_stage_id": ..., "then_reason_id": ...}]
    stage_change_rules: Mapped[Optional[list]] = mapped_column(JSON(none_as_null=True))

    questions = relationship(
        "TaskTemplateQuestion",
        back_populates="template",
        order_by="TaskTemplateQuestion.order",
        cascade="all, delete-orphan",
    )


class TaskTemplateQuestion(Base):
    __tablename__ = "task_template_questions"

    id: Mapped[uuid.UUID] = uuid_pk()
    template_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("client_project_task_templates.id", ondelete="CASCADE"), index=True)
    label: Mapped[str] = mapped_column(String(500), nullable=False)
    question_type: Mapped[str] = mapped_column(String(20), nullable=False)
    is_required: Mapped[bool] = mapped_column(Boolean, default=False)
    options: Mapped[Optional[list]] = mapped_column(JSON(none_as_null=True))
    order: Mapped[int] = mapped_column(Integer, default=0)
    conditional_logic: Mapped[Optional[dict]] = mapped_column(JSON(none_as_null=True))

    template = relationship("ClientProjectTaskTemplate", back_populates="questions")


class ClientProjectTask(Base):
    __tablename__ = "client_project_tasks"

    id: Mapped[uuid.UUID] = uuid_pk()
    project_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("projects.id", ondelete="CASCADE"), index=True)
    template_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("client_project_task_templates.id", ondelete="CASCADE"))
    status: Mapped[str] = mapped_column(String(20), default="pending")  # pending|completed
    responses: Mapped[Optional[dict]] = mapped_column(JSON(none_as_null=True))
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    completed_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    template = relationship("ClientProjectTaskTemplate")
    project = relationship("Project")


# =====================
# Recurring services
# =====================


class ClientService(Base):
    __tablename__ = "client_services"

    id: Mapped[uuid.UUID] = uuid_pk()
    client_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("clients.id", ondelete="CASCADE"), index=True)
    service_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("services.id", ondelete="CASCADE"))
    frequency: Mapped[Optional[str]] = mapped_column(String(20))
    next_start_date: Mapped[Optional[date]] = mapped_column(Date, index=True)
    next_due_date: Mapped[Optional[date]] = mapped_column(Date)
    target_delivery_date: Mapped[Optional[date]] = mapped_column(Date)
    service_owner_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    client = relationship("Client")
    service = relationship("Service")
    role_assignments = relationship("ClientServiceRoleAssignment", back_populates="client_service")


class PeopleService(Base):
    __tablename__ = "people_services"

    id: Mapped[uuid.UUID] = uuid_pk()
    person_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("people.id", ondelete="CASCADE"), index=True)
    service_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("services.id", ondelete="CASCADE"))
    frequency: Mapped[Optional[str]] = mapped_column(String(20))
    next_start_date: Mapped[Optional[date]] = mapped_column(Date, index=True)
    next_due_date: Mapped[Optional[date]] = mapped_column(Date)
    target_delivery_date: Mapped[Optional[date]] = mapped_column(Date)
    service_owner_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    person = relationship("Person")
    service = relationship("Service")


class ClientServiceRoleAssignment(Base):
    __tablename__ = "client_service_role_assignments"

    id: Mapped[uuid.UUID] = uuid_pk()
    client_service_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("client_services.id", ondelete="CASCADE"), index=True)
    work_role_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("work_roles.id", ondelete="CASCADE"))
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="CASCADE"))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    client_service = relationship("ClientService", back_populates="role_assignments")


# =====================
# Scheduling audit
# =====================


class ProjectSchedulingHistory(Base):
    """Append-only record of every scheduler action on a service."""

    __tablename__ = "project_scheduling_history"

    id: Mapped[uuid.UUID] = uuid_pk()
    client_service_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("client_services.id", ondelete="CASCADE"), index=True)
    people_service_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("people_services.id", ondelete="CASCADE"), index=True)
    project_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("projects.id", ondelete="SET NULL"))
    run_log_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("scheduling_run_logs.id", ondelete="SET NULL"))
    action: Mapped[str] = mapped_column(String(30), nullable=False)  # created|rescheduled|skipped
    scheduled_date: Mapped[Optional[date]] = mapped_column(Date)
    previous_next_start_date: Mapped[Optional[date]] = mapped_column(Date)
    previous_next_due_date: Mapped[Optional[date]] = mapped_column(Date)
    previous_target_delivery_date: Mapped[Optional[date]] = mapped_column(Date)
    new_next_start_date: Mapped[Optional[date]] = mapped_column(Date)
    new_next_due_date: Mapped[Optional[date]] = mapped_column(Date)
    new_target_delivery_date: Mapped[Optional[date]] = mapped_column(Date)
    frequency: Mapped[Optional[str]] = mapped_column(String(20))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class SchedulingRunLog(Base):
    __tablename__ = "scheduling_run_logs"

    id: Mapped[uuid.UUID] = uuid_pk()
    run_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    run_type: Mapped[str] = mapped_column(String(20), default="scheduled")  # scheduled|manual|catchup
    trigger_source: Mapped[Optional[str]] = mapped_column(String(50))
    status: Mapped[str] = mapped_column(String(20), default="running")  # running|completed|failed|cancelled
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    total_services_checked: Mapped[int] = mapped_column(Integer, default=0)
    services_found_due: Mapped[int] = mapped_column(Integer, default=0)
    projects_created: Mapped[int] = mapped_column(Integer, default=0)
    services_rescheduled: Mapped[int] = mapped_column(Integer, default=0)
    errors_encountered: Mapped[int] = mapped_column(Integer, default=0)
    ch_services_skipped: Mapped[int] = mapped_column(Integer, default=0)
    execution_time_ms: Mapped[Optional[int]] = mapped_column(Integer)
    error_details: Mapped[Optional[dict]] = mapped_column(JSON(none_as_null=True))
    summary: Mapped[Optional[str]] = mapped_column(Text)

    exceptions = relationship("SchedulingException", back_populates="run_log")


class SchedulingException(Base):
    __tablename__ = "scheduling_exceptions"

    id: Mapped[uuid.UUID] = uuid_pk()
    run_log_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), ForeignKey("scheduling_run_logs.id", ondelete="CASCADE"), index=True)
    service_kind: Mapped[str] = mapped_column(String(10), nullable=False)  # client|people
    client_service_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("client_services.id", ondelete="CASCADE"))
    people_service_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("people_services.id", ondelete="CASCADE"))
    service_name: Mapped[Optional[str]] = mapped_column(String(255))
    error_type: Mapped[str] = mapped_column(String(50), nullable=False)
    error_message: Mapped[str] = mapped_column(Text, nullable=False)
    context: Mapped[Optional[dict]] = mapped_column(JSON(none_as_null=True))
    resolved: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    resolved_by_user_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), ForeignKey("users.id", ondelete="SET NULL"))
    resolution_notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    run_log = relationship("SchedulingRunLog", back_populates="exceptions")
