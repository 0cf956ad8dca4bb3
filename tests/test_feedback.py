import pytest

from qadesk.errors import Conflict, Forbidden, ValidationError
from qadesk.extensions import db
from qadesk.jobs import notify
from qadesk.models import Notification
from qadesk.services.evaluations import submit_evaluation
from qadesk.services.feedback import (
    can_view, feedback_for_user, pending_for_agent, pending_for_reporting_head, record_agent_response,
    review_feedback, should_trigger,
)


@pytest.fixture
def people(make_user):
    manager = make_user("manager")
    return {
        "manager": manager,
        "agent": make_user("trainee", manager=manager),
        "orphan": make_user("trainee"),
        "qa": make_user("quality_analyst"),
        "other_agent": make_user("trainee", manager=manager),
    }


@pytest.fixture
def evaluate(org):
    """Submit an evaluation with the Greeting/Empathy ratings given and commit it."""
    def _evaluate(template, evaluator, greeting, empathy, **extra):
        greeting_param, empathy_param = template.parameters()
        data = {
            "templateId": template.id,
            "scores": [
                {"parameterId": greeting_param.id, "score": greeting},
                {"parameterId": empathy_param.id, "score": empathy},
            ],
        }
        data.update(extra)
        evaluation, fb, _ = submit_evaluation(org.id, evaluator.id, data)
        db.session.commit()
        return evaluation, fb
    return _evaluate


@pytest.mark.parametrize("score,threshold,expected", [
    (69.99, 70, True),
    (70, 70, False),
    ("70.00", "70", False),
    (85, 70, False),
    (0, 0, False),
    (None, 70, False),
    (50, None, False),
])
def test_should_trigger_is_strictly_below(score, threshold, expected):
    assert should_trigger(score, threshold) is expected


def test_low_score_routes_to_agent_and_their_manager(simple_template, evaluate, people):
    template = simple_template(threshold=70)
    evaluation, fb = evaluate(template, people["qa"], "no", "5", traineeId=people["agent"].id)
    assert float(evaluation.final_score) == 40.0
    assert fb is not None
    assert fb.agent_id == people["agent"].id
    assert fb.reporting_head_id == people["manager"].id
    assert fb.status == "pending"
    assert evaluation.feedback is fb


def test_agent_without_manager_reports_to_evaluator(simple_template, evaluate, people):
    template = simple_template(threshold=70)
    _, fb = evaluate(template, people["qa"], "no", "1", traineeId=people["orphan"].id)
    assert fb.reporting_head_id == people["qa"].id


def test_score_equal_to_threshold_opens_nothing(simple_template, evaluate, people):
    template = simple_template(threshold=40)
    evaluation, fb = evaluate(template, people["qa"], "no", "5", traineeId=people["agent"].id)
    assert float(evaluation.final_score) == 40.0
    assert fb is None


def test_template_without_threshold_opens_nothing(simple_template, evaluate, people):
    _, fb = evaluate(simple_template(), people["qa"], "no", "1", traineeId=people["agent"].id)
    assert fb is None


def test_fatal_error_opens_feedback(simple_template, evaluate, people):
    template = simple_template(threshold=50, fatal=True)
    evaluation, fb = evaluate(template, people["qa"], "no", "5", traineeId=people["agent"].id)
    assert evaluation.has_fatal_error
    assert float(evaluation.final_score) == 0.0
    assert fb is not None


def test_audio_evaluation_finds_agent_in_call_metadata(simple_template, evaluate, people, make_audio_file):
    template = simple_template(threshold=70)
    audio = make_audio_file(call_metrics={"agentId": str(people["agent"].id)})
    evaluation, fb = evaluate(template, people["qa"], "no", "3", audioFileId=audio.id)
    assert evaluation.evaluation_type == "audio"
    assert fb.agent_id == people["agent"].id
    assert fb.reporting_head_id == people["manager"].id


@pytest.mark.parametrize("metrics", [{}, {"agentId": "AG-77"}, {"agentId": "99999"}])
def test_audio_evaluation_without_known_agent_skips_feedback(simple_template, evaluate, people,
                                                             make_audio_file, metrics):
    template = simple_template(threshold=70)
    audio = make_audio_file(call_metrics=metrics)
    evaluation, fb = evaluate(template, people["qa"], "no", "3", audioFileId=audio.id)
    assert fb is None
    # the evaluation itself is still stored
    assert evaluation.id is not None


@pytest.fixture
def open_feedback_item(simple_template, evaluate, people):
    template = simple_template(threshold=70)
    _, fb = evaluate(template, people["qa"], "no", "5", traineeId=people["agent"].id)
    return fb


def test_agent_responds_once(open_feedback_item, people):
    fb = record_agent_response(open_feedback_item, people["agent"], "  I will greet properly  ")
    assert fb.agent_response == "I will greet properly"
    assert fb.agent_response_date is not None
    assert fb.status == "pending"
    with pytest.raises(Conflict):
        record_agent_response(fb, people["agent"], "again")


def test_only_the_agent_may_respond(open_feedback_item, people):
    with pytest.raises(Forbidden):
        record_agent_response(open_feedback_item, people["other_agent"], "not mine")
    with pytest.raises(ValidationError):
        record_agent_response(open_feedback_item, people["agent"], "   ")


def test_reporting_head_waits_for_agent(open_feedback_item, people):
    with pytest.raises(Conflict):
        review_feedback(open_feedback_item, people["manager"], "accepted")


def test_head_accepts_and_item_becomes_terminal(open_feedback_item, people):
    fb = record_agent_response(open_feedback_item, people["agent"], "Understood")
    review_feedback(fb, people["manager"], "accepted", response="Thanks")
    assert fb.status == "accepted"
    assert fb.reporting_head_response == "Thanks"
    assert fb.rejection_reason is None
    with pytest.raises(Conflict):
        review_feedback(fb, people["manager"], "rejected", rejection_reason="changed my mind")
    with pytest.raises(Conflict):
        record_agent_response(fb, people["agent"], "more")


def test_rejection_needs_a_reason(open_feedback_item, people):
    fb = record_agent_response(open_feedback_item, people["agent"], "Understood")
    with pytest.raises(ValidationError):
        review_feedback(fb, people["manager"], "rejected", rejection_reason=" ")
    with pytest.raises(ValidationError):
        review_feedback(fb, people["manager"], "pending")
    review_feedback(fb, people["manager"], "rejected", rejection_reason="Response too vague")
    assert fb.status == "rejected"
    assert fb.rejection_reason == "Response too vague"


def test_review_permissions(open_feedback_item, people, admin):
    fb = record_agent_response(open_feedback_item, people["agent"], "Understood")
    with pytest.raises(Forbidden):
        review_feedback(fb, people["qa"], "accepted")
    review_feedback(fb, admin, "accepted")
    assert fb.status == "accepted"


def test_pending_queues(open_feedback_item, people):
    agent, manager = people["agent"], people["manager"]
    assert pending_for_agent(agent) == [open_feedback_item]
    assert pending_for_reporting_head(manager) == []

    record_agent_response(open_feedback_item, agent, "Understood")
    db.session.commit()
    assert pending_for_agent(agent) == []
    assert pending_for_reporting_head(manager) == [open_feedback_item]

    review_feedback(open_feedback_item, manager, "accepted")
    db.session.commit()
    assert pending_for_reporting_head(manager) == []


def test_visibility_by_role(open_feedback_item, people, admin):
    fb = open_feedback_item
    assert feedback_for_user(people["agent"]) == [fb]
    assert feedback_for_user(people["other_agent"]) == []
    assert feedback_for_user(people["manager"]) == [fb]
    assert feedback_for_user(people["qa"]) == [fb]
    assert feedback_for_user(admin) == [fb]

    assert can_view(fb, people["agent"])
    assert can_view(fb, people["qa"])
    assert can_view(fb, admin)
    assert not can_view(fb, people["other_agent"])


def test_feedback_from_another_organization_is_hidden(open_feedback_item, make_user):
    from qadesk.models import Organization
    other_org = Organization(name="Elsewhere")
    db.session.add(other_org)
    db.session.commit()
    outsider = make_user("admin", org_id=other_org.id)
    assert feedback_for_user(outsider) == []
    assert not can_view(open_feedback_item, outsider)


def test_notification_job_mails_the_agent(open_feedback_item, people, monkeypatch):
    sent = []

    def fake_send(to_email, subject, html):
        sent.append((to_email, subject))
        return 202, {"X-Message-Id": "msg-1"}

    monkeypatch.setattr(notify, "send_mail", fake_send)
    notification_id = notify.notify_feedback_opened(open_feedback_item.id)

    assert sent == [(people["agent"].email, f"Feedback requested on evaluation #{open_feedback_item.evaluation_id}")]
    n = db.session.get(Notification, notification_id)
    assert n.feedback_id == open_feedback_item.id
    assert n.provider_message_id == "msg-1"


def test_notification_job_ignores_missing_feedback():
    assert notify.notify_feedback_opened(12345) is None
