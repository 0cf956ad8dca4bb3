from flask import current_app, jsonify, request
from flask_login import login_required, current_user
from . import bp
from ...errors import Forbidden, NotFound, ValidationError
from ...extensions import db
from ...models.evaluation import EvaluationFeedback
from ...services import feedback as feedback_service


def _load(feedback_id):
    fb = db.session.get(EvaluationFeedback, feedback_id)
    if fb is None:
        raise NotFound("Feedback not found")
    if not feedback_service.can_view(fb, current_user):
        raise Forbidden("Access denied")
    return fb


@bp.get("/evaluation-feedback")
@login_required
def list_feedback():
    return jsonify([fb.to_dict() for fb in feedback_service.feedback_for_user(current_user)])


@bp.get("/evaluation-feedback/pending")
@login_required
def pending_feedback():
    return jsonify([fb.to_dict() for fb in feedback_service.pending_for_agent(current_user)])


@bp.get("/evaluation-feedback/pending-approval")
@login_required
def pending_approval():
    return jsonify([fb.to_dict() for fb in feedback_service.pending_for_reporting_head(current_user)])


@bp.get("/evaluation-feedback/<int:feedback_id>")
@login_required
def show_feedback(feedback_id):
    return jsonify(_load(feedback_id).to_dict())


@bp.patch("/evaluation-feedback/<int:feedback_id>")
@login_required
def update_feedback(feedback_id):
    """Agent response (``agentResponse``) or reporting head decision (``status``)."""
    fb = _load(feedback_id)
    data = request.get_json(silent=True) or {}
    if "agentResponse" in data:
        feedback_service.record_agent_response(fb, current_user, data.get("agentResponse"))
    elif "status" in data:
        feedback_service.review_feedback(
            fb, current_user, data.get("status"),
            response=data.get("reportingHeadResponse"),
            rejection_reason=data.get("rejectionReason"),
        )
    else:
        raise ValidationError("Provide agentResponse or status")
    db.session.commit()
    current_app.logger.info("feedback %s updated by user %s: %s", fb.id, current_user.id, fb.status)
    return jsonify(fb.to_dict())
