import uuid
from datetime import datetime
from unittest import mock

import pytest
import pytz

from practicehub.models.models import (
    ClientProjectTask,
    ClientProjectTaskTemplate,
    Project,
    ProjectChronology,
    ReasonFieldResponse,
    StageApprovalResponse,
    TaskTemplateQuestion,
)
from practicehub.services.errors import (
    ApprovalIncompleteError,
    ConcurrentTransitionError,
    InvalidStageError,
    ProjectInactiveError,
    ReasonNotAllowedError,
    RequiredFieldMissingError,
)
from practicehub.services.stage_transitions import attempt_transition, complete_client_task, get_stage_timer


def utc(*args):
    return datetime(*args, tzinfo=pytz.UTC)


# Tuesday afternoon; projects are created Monday 2024-03-04 09:00
NOW = utc(2024, 3, 5, 13, 0)


@pytest.fixture
def pipeline(make_pipeline, make_reason, make_approval):
    project_type, stages = make_pipeline(
        ["Not started", "In progress", "Review", "Completed"],
        final={"Completed": "completed_successfully"},
        stage_options={"Review": {"max_instance_time": 3.0, "max_total_time": 10.0}},
    )
    review_gate = make_approval(
        project_type,
        "Ready for review",
        [
            {"field_name": "Bank reconciled?", "field_type": "boolean", "expected_value_boolean": True},
            {
                "field_name": "Transactions coded",
                "field_type": "number",
                "comparison_type": "greater_than",
                "expected_value_number": 10,
            },
        ],
    )
    reasons = {
        "start": make_reason(project_type, "Work started", [stages["Not started"]]),
        "review": make_reason(project_type, "Ready for review", [stages["In progress"]], approval=review_gate),
        "send_back": make_reason(project_type, "Queries raised", [stages["Review"]]),
        "complete": make_reason(
            project_type,
            "Signed off",
            [stages["Review"]],
            custom_fields=[
                {"field_name": "Sign-off date", "field_type": "date", "is_required": True},
                {"field_name": "Filed returns", "field_type": "multi_select", "options": ["VAT", "CT600"]},
            ],
        ),
    }
    return project_type, stages, reasons, review_gate


def chronology_of(db, project_id):
    db.expire_all()
    return (
        db.query(ProjectChronology)
        .filter(ProjectChronology.project_id == project_id)
        .order_by(ProjectChronology.timestamp.asc())
        .all()
    )


def test_successful_move_writes_chronology_and_business_hours(db, pipeline, make_project, user):
    project_type, stages, reasons, _ = pipeline
    project = make_project(project_type, "Not started")

    result = attempt_transition(
        db,
        project.id,
        target_stage_id=stages["In progress"].id,
        reason_id=reasons["start"].id,
        actor_id=user.id,
        notes="Records received",
        now=NOW,
    )

    assert result.applied
    assert (result.from_stage, result.to_stage) == ("Not started", "In progress")
    # Monday 09:00-17:30 plus Tuesday 09:00-13:00
    assert result.business_hours_in_previous_stage == 12.5
    entries = chronology_of(db, project.id)
    assert len(entries) == 1
    entry = entries[0]
    assert entry.from_status == "Not started"
    assert entry.to_status == "In progress"
    assert entry.change_reason == "Work started"
    assert entry.changed_by_id == user.id
    assert entry.time_in_previous_stage == 28 * 60
    assert entry.business_hours_in_previous_stage == 12.5
    assert db.get(Project, project.id).current_status == "In progress"


def test_target_outside_project_type_is_invalid(db, pipeline, make_project):
    project_type, stages, reasons, _ = pipeline
    project = make_project(project_type, "Not started")

    with pytest.raises(InvalidStageError):
        attempt_transition(db, project.id, target_stage_id=uuid.uuid4(), reason_id=reasons["start"].id, now=NOW)

    assert chronology_of(db, project.id) == []


def test_dangling_status_is_invalid(db, pipeline, make_project):
    project_type, stages, reasons, _ = pipeline
    project = make_project(project_type, "Awaiting records")

    with pytest.raises(InvalidStageError):
        attempt_transition(db, project.id, target_stage_id=stages["In progress"].id, reason_id=reasons["start"].id, now=NOW)


def test_reason_must_be_mapped_to_current_stage(db, pipeline, make_project):
    project_type, stages, reasons, _ = pipeline
    project = make_project(project_type, "Not started")

    with pytest.raises(ReasonNotAllowedError):
        attempt_transition(db, project.id, target_stage_id=stages["Review"].id, reason_id=reasons["send_back"].id, now=NOW)
    with pytest.raises(ReasonNotAllowedError):
        attempt_transition(db, project.id, target_stage_id=stages["Review"].id, reason_id=None, now=NOW)

    db.expire_all()
    assert db.get(Project, project.id).current_status == "Not started"


def test_unmet_approval_blocks_the_move_and_stores_nothing(db, pipeline, make_project):
    project_type, stages, reasons, gate = pipeline
    project = make_project(project_type, "In progress")
    bank, coded = gate.fields

    with pytest.raises(ApprovalIncompleteError) as exc:
        attempt_transition(
            db,
            project.id,
            target_stage_id=stages["Review"].id,
            reason_id=reasons["review"].id,
            approval_answers={str(bank.id): True, str(coded.id): 10},
            now=NOW,
        )

    assert exc.value.approval_name == "Ready for review"
    assert [(u.field_name, u.reason) for u in exc.value.unmet] == [("Transactions coded", "comparison_failed")]
    assert chronology_of(db, project.id) == []
    assert db.query(StageApprovalResponse).count() == 0
    assert db.get(Project, project.id).current_status == "In progress"


def test_submitted_approval_answers_are_saved_with_the_move(db, pipeline, make_project):
    project_type, stages, reasons, gate = pipeline
    project = make_project(project_type, "In progress")
    bank, coded = gate.fields

    result = attempt_transition(
        db,
        project.id,
        target_stage_id=stages["Review"].id,
        reason_id=reasons["review"].id,
        approval_answers={str(bank.id): True, str(coded.id): "42"},
        now=NOW,
    )

    assert result.applied
    stored = {r.field_id: r for r in db.query(StageApprovalResponse).filter(StageApprovalResponse.project_id == project.id)}
    assert stored[bank.id].value_boolean is True
    assert stored[coded.id].value_number == 42.0
    assert result.chronology.answers["approvals"] == {str(bank.id): True, str(coded.id): 42.0}


def test_stored_answers_count_towards_the_gate(db, pipeline, make_project):
    project_type, stages, reasons, gate = pipeline
    project = make_project(project_type, "In progress")
    bank, coded = gate.fields
    db.add(StageApprovalResponse(project_id=project.id, field_id=bank.id, value_boolean=True))
    db.commit()

    result = attempt_transition(
        db,
        project.id,
        target_stage_id=stages["Review"].id,
        reason_id=reasons["review"].id,
        approval_answers={str(coded.id): 11},
        now=NOW,
    )

    assert result.applied


def test_required_reason_field_missing(db, pipeline, make_project):
    project_type, stages, reasons, _ = pipeline
    project = make_project(project_type, "Review")

    with pytest.raises(RequiredFieldMissingError) as exc:
        attempt_transition(
            db,
            project.id,
            target_stage_id=stages["Completed"].id,
            reason_id=reasons["complete"].id,
            custom_field_answers={},
            now=NOW,
        )

    assert [f.field_name for f in exc.value.missing] == ["Sign-off date"]
    assert chronology_of(db, project.id) == []


def test_multi_select_answer_outside_options(db, pipeline, make_project):
    project_type, stages, reasons, _ = pipeline
    project = make_project(project_type, "Review")
    sign_off, filed = reasons["complete"].custom_fields

    with pytest.raises(RequiredFieldMissingError) as exc:
        attempt_transition(
            db,
            project.id,
            target_stage_id=stages["Completed"].id,
            reason_id=reasons["complete"].id,
            custom_field_answers={str(sign_off.id): "2024-03-05", str(filed.id): ["P11D"]},
            now=NOW,
        )

    assert exc.value.missing[0].reason == "invalid_option"


def test_single_select_answer_outside_options(db, pipeline, make_project, make_reason):
    project_type, stages, reasons, _ = pipeline
    on_hold = make_reason(
        project_type,
        "Waiting on client",
        [stages["Review"]],
        custom_fields=[
            {"field_name": "Waiting for", "field_type": "single_select", "options": ["Bank statements", "Receipts"]},
        ],
    )
    project = make_project(project_type, "Review")
    waiting_for = on_hold.custom_fields[0]

    with pytest.raises(RequiredFieldMissingError) as exc:
        attempt_transition(
            db,
            project.id,
            target_stage_id=stages["In progress"].id,
            reason_id=on_hold.id,
            custom_field_answers={str(waiting_for.id): "Payslips"},
            now=NOW,
        )

    assert exc.value.missing[0].field_name == "Waiting for"
    assert exc.value.missing[0].reason == "invalid_option"
    assert chronology_of(db, project.id) == []

    result = attempt_transition(
        db,
        project.id,
        target_stage_id=stages["In progress"].id,
        reason_id=on_hold.id,
        custom_field_answers={str(waiting_for.id): "Receipts"},
        now=NOW,
    )
    assert result.applied


def test_final_stage_applies_completion_policy(db, pipeline, make_project, user):
    project_type, stages, reasons, _ = pipeline
    project = make_project(project_type, "Review")
    sign_off, filed = reasons["complete"].custom_fields

    result = attempt_transition(
        db,
        project.id,
        target_stage_id=stages["Completed"].id,
        reason_id=reasons["complete"].id,
        custom_field_answers={str(sign_off.id): "2024-03-05", str(filed.id): ["VAT"]},
        actor_id=user.id,
        now=NOW,
    )

    db.expire_all()
    project = db.get(Project, project.id)
    assert result.applied
    assert project.current_status == "Completed"
    assert project.completion_status == "completed_successfully"
    assert project.inactive is True
    assert project.archived is False
    responses = db.query(ReasonFieldResponse).filter(ReasonFieldResponse.chronology_id == result.chronology.id).all()
    values = {r.field_type: r for r in responses}
    assert values["date"].value_date.isoformat() == "2024-03-05"
    assert values["multi_select"].value_multi_select == ["VAT"]


def test_moving_to_the_current_stage_is_a_noop(db, pipeline, make_project):
    project_type, stages, reasons, _ = pipeline
    project = make_project(project_type, "In progress")
    cache = mock.Mock()

    result = attempt_transition(
        db, project.id, target_stage_id=stages["In progress"].id, reason_id=reasons["start"].id, now=NOW, cache=cache
    )

    assert result.applied is False
    assert chronology_of(db, project.id) == []
    cache.invalidate.assert_not_called()


def test_inactive_project_cannot_move(db, pipeline, make_project):
    project_type, stages, reasons, _ = pipeline
    project = make_project(project_type, "Not started", inactive=True)

    with pytest.raises(ProjectInactiveError):
        attempt_transition(db, project.id, target_stage_id=stages["In progress"].id, reason_id=reasons["start"].id, now=NOW)


def test_unknown_project(db):
    with pytest.raises(LookupError):
        attempt_transition(db, uuid.uuid4(), target_stage_id=uuid.uuid4(), reason_id=None)


def test_stale_session_loses_the_race(db, session_factory, pipeline, make_project):
    project_type, stages, reasons, _ = pipeline
    project = make_project(project_type, "Not started")
    stale = session_factory()
    try:
        # The stale session has already seen the project in "Not started"
        held = stale.get(Project, project.id)
        assert held.current_status == "Not started"

        attempt_transition(
            db, project.id, target_stage_id=stages["In progress"].id, reason_id=reasons["start"].id, now=NOW
        )
        with pytest.raises(ConcurrentTransitionError):
            attempt_transition(
                stale, project.id, target_stage_id=stages["In progress"].id, reason_id=reasons["start"].id, now=NOW
            )
    finally:
        stale.close()

    entries = chronology_of(db, project.id)
    assert len(entries) == 1
    assert db.get(Project, project.id).current_status == "In progress"


def test_cache_is_invalidated_after_commit(db, pipeline, make_project):
    project_type, stages, reasons, _ = pipeline
    project = make_project(project_type, "Not started")
    cache = mock.Mock()

    attempt_transition(
        db, project.id, target_stage_id=stages["In progress"].id, reason_id=reasons["start"].id, now=NOW, cache=cache
    )

    cache.invalidate.assert_called_once_with(project_type.id)


def test_stage_timer_sums_earlier_visits(db, pipeline, make_project):
    project_type, stages, reasons, _ = pipeline
    project = make_project(project_type, "Review")
    for from_status, to_status, ts, hours in [
        ("Not started", "In progress", utc(2024, 3, 4, 10, 0), 1.0),
        ("In progress", "Review", utc(2024, 3, 4, 11, 0), 1.0),
        ("Review", "In progress", utc(2024, 3, 4, 13, 0), 2.0),
        ("In progress", "Review", utc(2024, 3, 5, 9, 0), 4.5),
    ]:
        db.add(
            ProjectChronology(
                project_id=project.id,
                from_status=from_status,
                to_status=to_status,
                timestamp=ts,
                business_hours_in_previous_stage=hours,
            )
        )
    db.commit()

    timer = get_stage_timer(db, project, now=NOW)

    assert timer.stage_name == "Review"
    assert timer.business_hours_in_stage == 4.0
    assert timer.total_business_hours_in_stage == 6.0
    assert timer.is_instance_overdue is True
    assert timer.is_total_overdue is False
    assert timer.display == "4h"


@pytest.fixture
def task_template(db, pipeline):
    project_type, stages, reasons, _ = pipeline
    template = ClientProjectTaskTemplate(
        project_type_id=project_type.id,
        name="Records checklist",
        on_completion_stage_id=stages["Review"].id,
        on_completion_reason_id=reasons["review"].id,
        stage_change_rules=[
            {
                "ifStageId": str(stages["Not started"].id),
                "thenStageId": str(stages["In progress"].id),
                "thenReasonId": str(reasons["start"].id),
            }
        ],
    )
    db.add(template)
    db.flush()
    received = TaskTemplateQuestion(
        template_id=template.id, label="All records received?", question_type="boolean", is_required=True, order=0
    )
    db.add(received)
    db.flush()
    db.add(
        TaskTemplateQuestion(
            template_id=template.id,
            label="What is missing?",
            question_type="long_text",
            is_required=True,
            order=1,
            conditional_logic={"showIf": {"questionId": str(received.id), "operator": "equals", "value": "false"}},
        )
    )
    db.commit()
    return template


def test_completing_a_task_follows_the_matching_rule(db, pipeline, make_project, task_template, user):
    project_type, stages, reasons, _ = pipeline
    project = make_project(project_type, "Not started")
    task = ClientProjectTask(project_id=project.id, template_id=task_template.id)
    db.add(task)
    db.commit()
    received = task_template.questions[0]

    task, result = complete_client_task(db, task.id, {str(received.id): True}, actor_id=user.id, now=NOW)

    assert task.status == "completed"
    assert task.responses == {str(received.id): True}
    assert result.applied
    assert result.to_stage == "In progress"
    assert chronology_of(db, project.id)[0].change_reason == "Work started"


def test_task_with_visible_required_question_unanswered(db, pipeline, make_project, task_template):
    project_type, stages, reasons, _ = pipeline
    project = make_project(project_type, "Not started")
    task = ClientProjectTask(project_id=project.id, template_id=task_template.id)
    db.add(task)
    db.commit()
    received = task_template.questions[0]

    with pytest.raises(RequiredFieldMissingError) as exc:
        complete_client_task(db, task.id, {str(received.id): False}, now=NOW)

    assert [f.field_name for f in exc.value.missing] == ["What is missing?"]
    db.expire_all()
    assert db.get(ClientProjectTask, task.id).status == "pending"


def test_failed_move_leaves_the_task_open(db, pipeline, make_project, task_template):
    project_type, stages, reasons, _ = pipeline
    # No rule for "In progress": falls back to the template's Review move, whose gate is unmet
    project = make_project(project_type, "In progress")
    task = ClientProjectTask(project_id=project.id, template_id=task_template.id)
    db.add(task)
    db.commit()
    received = task_template.questions[0]

    with pytest.raises(ApprovalIncompleteError):
        complete_client_task(db, task.id, {str(received.id): True}, now=NOW)

    db.expire_all()
    assert db.get(ClientProjectTask, task.id).status == "pending"
