import pytest

from qadesk.extensions import db, rq
from qadesk.jobs import notify
from qadesk.models import AudioFileAllocation, Notification


TEMPLATE_PAYLOAD = {
    "name": "Inbound calls",
    "status": "active",
    "feedbackThreshold": 70,
    "pillars": [
        {"name": "Compliance", "weightage": 60, "parameters": [
            {"name": "Greeting", "ratingType": "yes_no_na", "weightage": 100,
             "noReasons": ["Skipped greeting"]},
        ]},
        {"name": "Soft skills", "weightage": 40, "parameters": [
            {"name": "Empathy", "ratingType": "numeric", "weightage": 100},
        ]},
    ],
}


@pytest.fixture
def team(make_user):
    manager = make_user("manager")
    return {
        "manager": manager,
        "agent": make_user("trainee", manager=manager),
        "qa": make_user("quality_analyst"),
    }


@pytest.fixture
def template_json(login, admin):
    client = login(admin)
    resp = client.post("/evaluation-templates", json=TEMPLATE_PAYLOAD)
    assert resp.status_code == 201, resp.get_json()
    return resp.get_json()


def _scores(template_json, greeting, empathy):
    greeting_param = template_json["pillars"][0]["parameters"][0]
    empathy_param = template_json["pillars"][1]["parameters"][0]
    return [
        {"parameterId": greeting_param["id"], "score": greeting},
        {"parameterId": empathy_param["id"], "score": empathy},
    ]


def test_template_round_trip(template_json, client):
    assert template_json["feedbackThreshold"] == 70.0
    assert [p["name"] for p in template_json["pillars"]] == ["Compliance", "Soft skills"]
    assert template_json["pillars"][0]["parameters"][0]["noReasons"] == ["Skipped greeting"]

    resp = client.patch(f"/evaluation-templates/{template_json['id']}", json={"feedbackThreshold": 75})
    assert resp.get_json()["feedbackThreshold"] == 75.0
    assert len(client.get("/evaluation-templates?status=active").get_json()) == 1


def test_template_validation(login, admin):
    client = login(admin)
    assert client.post("/evaluation-templates", json={"pillars": []}).status_code == 400
    bad = dict(TEMPLATE_PAYLOAD, feedbackThreshold=150)
    assert client.post("/evaluation-templates", json=bad).status_code == 400
    bad = dict(TEMPLATE_PAYLOAD, pillars=[{"name": "P", "weightage": 100,
                                           "parameters": [{"name": "x", "ratingType": "stars"}]}])
    assert client.post("/evaluation-templates", json=bad).status_code == 400


def _single_parameter(param=None, pillar_weight=100):
    param = dict({"name": "Tone", "ratingType": "yes_no_na", "weightage": 100}, **(param or {}))
    return dict(TEMPLATE_PAYLOAD, pillars=[{"name": "P", "weightage": pillar_weight, "parameters": [param]}])


@pytest.mark.parametrize("scale", [["good", "bad"], "good", {}, {"Good": "great"}, {"Good": 150}, {"Good": True}])
def test_custom_scale_must_map_labels_to_scores(login, admin, scale):
    client = login(admin)
    payload = _single_parameter({"ratingType": "custom", "customScale": scale})
    resp = client.post("/evaluation-templates", json=payload)
    assert resp.status_code == 400, resp.get_json()


def test_custom_scale_template_scores(login, admin, team):
    client = login(admin)
    payload = _single_parameter({"ratingType": "custom", "customScale": {"Good": 100, "Fair": 62.5}})
    template = client.post("/evaluation-templates", json=payload).get_json()
    parameter_id = template["pillars"][0]["parameters"][0]["id"]

    client = login(team["qa"])
    resp = client.post("/evaluations", json={
        "templateId": template["id"], "traineeId": team["agent"].id,
        "scores": [{"parameterId": parameter_id, "score": "fair"}],
    })
    assert resp.status_code == 201, resp.get_json()
    assert resp.get_json()["finalScore"] == 62.5


@pytest.mark.parametrize("pillar_weight,param_weight", [
    ("abc", 100), (100, "12.5"), (62.5, 100), (100, -1), (101, 100), (True, 100), (100, None),
])
def test_weightage_must_be_a_whole_number(login, admin, pillar_weight, param_weight):
    client = login(admin)
    payload = _single_parameter({"weightage": param_weight}, pillar_weight=pillar_weight)
    resp = client.post("/evaluation-templates", json=payload)
    assert resp.status_code == 400
    assert "whole number" in resp.get_json()["message"]


def test_whole_number_weightage_forms_are_accepted(login, admin):
    client = login(admin)
    resp = client.post("/evaluation-templates", json=_single_parameter({"weightage": "40"}, pillar_weight=60.0))
    assert resp.status_code == 201, resp.get_json()
    pillar = resp.get_json()["pillars"][0]
    assert pillar["weightage"] == 60
    assert pillar["parameters"][0]["weightage"] == 40


def test_analysts_cannot_edit_templates(login, team):
    client = login(team["qa"])
    assert client.post("/evaluation-templates", json=TEMPLATE_PAYLOAD).status_code == 403


def test_requires_login(client):
    resp = client.post("/evaluations", json={})
    assert resp.status_code == 401
    assert resp.get_json()["message"] == "Unauthorized"


def test_submit_scores_and_skips_feedback_above_threshold(template_json, login, team):
    client = login(team["qa"])
    resp = client.post("/evaluations", json={
        "templateId": template_json["id"],
        "traineeId": team["agent"].id,
        "scores": _scores(template_json, "yes", "3"),
    })
    assert resp.status_code == 201, resp.get_json()
    body = resp.get_json()
    assert body["finalScore"] == 80.0
    assert body["weightedScore"] == 80.0
    assert body["hasFatalError"] is False
    assert body["feedbackId"] is None
    assert body["evaluatorId"] == team["qa"].id
    assert len(body["scores"]) == 2


def test_low_score_opens_feedback_and_notifies(template_json, login, team, app, monkeypatch):
    sent = []
    monkeypatch.setattr(notify, "send_mail", lambda to, subject, html: sent.append(to) or (202, {}))
    monkeypatch.setattr(rq, "queue", None)
    app.config["FEEDBACK_NOTIFICATIONS"] = True

    client = login(team["qa"])
    resp = client.post("/evaluations", json={
        "templateId": template_json["id"],
        "traineeId": team["agent"].id,
        "scores": _scores(template_json, "no", "5"),
    })
    body = resp.get_json()
    assert body["finalScore"] == 40.0
    assert body["feedbackId"] is not None
    assert sent == [team["agent"].email]
    assert Notification.query.filter_by(feedback_id=body["feedbackId"]).count() == 1

    detail = client.get(f"/evaluations/{body['id']}").get_json()
    assert detail["feedback"]["agentId"] == team["agent"].id
    assert detail["feedback"]["reportingHeadId"] == team["manager"].id


def test_missing_parameter_is_rejected(template_json, login, team):
    client = login(team["qa"])
    scores = _scores(template_json, "yes", "3")[:1]
    resp = client.post("/evaluations", json={"templateId": template_json["id"], "scores": scores})
    assert resp.status_code == 400
    assert resp.get_json()["missingParameters"][0]["name"] == "Empathy"


def test_unknown_template_and_archived_template(template_json, login, admin, team):
    client = login(team["qa"])
    resp = client.post("/evaluations", json={"templateId": 9999, "scores": []})
    assert resp.status_code == 404

    client = login(admin)
    client.patch(f"/evaluation-templates/{template_json['id']}", json={"status": "archived"})
    resp = client.post("/evaluations", json={
        "templateId": template_json["id"], "scores": _scores(template_json, "yes", "3"),
    })
    assert resp.status_code == 400


def test_audio_evaluation_closes_the_allocation(template_json, login, admin, team, make_audio_file):
    audio = make_audio_file(call_metrics={"agentId": str(team["agent"].id)})
    client = login(admin)
    resp = client.post("/azure-audio-allocate", json={
        "audioFileIds": [audio.id], "qualityAnalystId": team["qa"].id,
    })
    assert resp.status_code == 200, resp.get_json()

    client = login(team["qa"])
    payload = {"templateId": template_json["id"], "audioFileId": audio.id,
               "scores": _scores(template_json, "no", "3")}
    body = client.post("/evaluations", json=payload).get_json()
    assert body["evaluationType"] == "audio"
    assert body["feedbackId"] is not None

    db.session.refresh(audio)
    allocation = AudioFileAllocation.query.filter_by(audio_file_id=audio.id).one()
    assert audio.status == "evaluated"
    assert audio.evaluation_id == body["id"]
    assert allocation.status == "evaluated"
    assert allocation.evaluation_id == body["id"]

    again = client.post("/evaluations", json=payload)
    assert again.status_code == 400


def test_evaluation_listing_is_scoped(template_json, login, team, make_user):
    other_agent = make_user("trainee")
    client = login(team["qa"])
    for trainee in (team["agent"], other_agent):
        client.post("/evaluations", json={
            "templateId": template_json["id"], "traineeId": trainee.id,
            "scores": _scores(template_json, "yes", "5"),
        })
    assert len(client.get("/evaluations").get_json()) == 2

    client = login(other_agent)
    rows = client.get("/evaluations").get_json()
    assert [r["traineeId"] for r in rows] == [other_agent.id]


@pytest.fixture
def feedback_id(template_json, login, team):
    client = login(team["qa"])
    body = client.post("/evaluations", json={
        "templateId": template_json["id"],
        "traineeId": team["agent"].id,
        "scores": _scores(template_json, "no", "1"),
    }).get_json()
    return body["feedbackId"]


def test_feedback_workflow_over_http(feedback_id, login, team):
    client = login(team["agent"])
    assert [f["id"] for f in client.get("/evaluation-feedback/pending").get_json()] == [feedback_id]
    resp = client.patch(f"/evaluation-feedback/{feedback_id}", json={"agentResponse": "Will fix my opening"})
    assert resp.status_code == 200
    assert resp.get_json()["agentResponse"] == "Will fix my opening"
    assert client.patch(f"/evaluation-feedback/{feedback_id}",
                        json={"agentResponse": "again"}).status_code == 409

    client = login(team["manager"])
    assert [f["id"] for f in client.get("/evaluation-feedback/pending-approval").get_json()] == [feedback_id]
    resp = client.patch(f"/evaluation-feedback/{feedback_id}", json={"status": "rejected"})
    assert resp.status_code == 400
    resp = client.patch(f"/evaluation-feedback/{feedback_id}",
                        json={"status": "rejected", "rejectionReason": "Too generic"})
    assert resp.status_code == 200
    assert resp.get_json()["status"] == "rejected"
    assert client.patch(f"/evaluation-feedback/{feedback_id}",
                        json={"status": "accepted"}).status_code == 409


def test_feedback_access_control(feedback_id, login, team, make_user):
    outsider = make_user("trainee")
    client = login(outsider)
    assert client.get(f"/evaluation-feedback/{feedback_id}").status_code == 403
    assert client.get("/evaluation-feedback/424242").status_code == 404

    client = login(team["manager"])
    # reporting head cannot answer in the agent's place
    resp = client.patch(f"/evaluation-feedback/{feedback_id}", json={"agentResponse": "on behalf"})
    assert resp.status_code == 403
    assert client.patch(f"/evaluation-feedback/{feedback_id}", json={}).status_code == 400
