from flask import current_app, jsonify, request
from flask_login import login_required, current_user
from . import bp
from ...errors import Forbidden, NotFound
from ...extensions import db, rq
from ...jobs.notify import notify_feedback_opened
from ...models.evaluation import Evaluation
from ...models.evaluation_template import EvaluationTemplate
from ...services.evaluations import create_template, get_template, submit_evaluation, update_template
from ...utils.decorators import roles_required
from ...utils.parsing import coerce_int

template_editor_required = roles_required("owner", "admin", "manager", "trainer")


@bp.post("/evaluation-templates")
@template_editor_required
def create_template_view():
    template = create_template(current_user.org_id, current_user.id, request.get_json(silent=True) or {})
    db.session.commit()
    current_app.logger.info("evaluation template %s created", template.id)
    return jsonify(template.to_dict()), 201


@bp.get("/evaluation-templates")
@login_required
def list_templates():
    q = EvaluationTemplate.query.filter_by(org_id=current_user.org_id)
    status = request.args.get("status")
    if status:
        q = q.filter_by(status=status)
    return jsonify([t.to_dict() for t in q.order_by(EvaluationTemplate.id).all()])


@bp.get("/evaluation-templates/<int:template_id>")
@login_required
def show_template(template_id):
    return jsonify(get_template(current_user.org_id, template_id).to_dict())


@bp.patch("/evaluation-templates/<int:template_id>")
@template_editor_required
def patch_template(template_id):
    template = get_template(current_user.org_id, template_id)
    update_template(template, request.get_json(silent=True) or {})
    db.session.commit()
    return jsonify(template.to_dict())


@bp.post("/evaluations")
@login_required
def create_evaluation():
    evaluation, feedback, result = submit_evaluation(
        current_user.org_id, current_user.id, request.get_json(silent=True) or {},
    )
    db.session.commit()

    if feedback is not None and current_app.config.get("FEEDBACK_NOTIFICATIONS"):
        rq.enqueue(notify_feedback_opened, feedback.id)

    body = evaluation.to_dict()
    body["weightedScore"] = float(result.weighted_score)
    body["fatalParameters"] = result.fatal_parameters
    body["pillarScores"] = {str(k): float(v) if v is not None else None for k, v in result.pillar_scores.items()}
    body["feedbackId"] = feedback.id if feedback is not None else None
    return jsonify(body), 201


def _visible_evaluations():
    q = Evaluation.query.filter_by(org_id=current_user.org_id)
    if current_user.role == "quality_analyst":
        q = q.filter_by(evaluator_id=current_user.id)
    elif current_user.role in ("trainee", "advisor"):
        q = q.filter_by(trainee_id=current_user.id)
    return q


@bp.get("/evaluations")
@login_required
def list_evaluations():
    q = _visible_evaluations()
    trainee_id = coerce_int(request.args.get("traineeId"))
    if trainee_id is not None:
        q = q.filter_by(trainee_id=trainee_id)
    rows = q.order_by(Evaluation.id.desc()).all()
    return jsonify([e.to_dict(include_scores=False) for e in rows])


@bp.get("/evaluations/<int:evaluation_id>")
@login_required
def show_evaluation(evaluation_id):
    evaluation = db.session.get(Evaluation, evaluation_id)
    if evaluation is None:
        raise NotFound("Evaluation not found")
    if evaluation.org_id != current_user.org_id:
        raise Forbidden("Access denied")
    body = evaluation.to_dict()
    body["feedback"] = evaluation.feedback.to_dict() if evaluation.feedback is not None else None
    return jsonify(body)
