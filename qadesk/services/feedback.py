"""Feedback routing for low scoring evaluations.

A feedback item is opened when an evaluation scores strictly below the
threshold copied from its template. It goes to the evaluated agent, with the
agent's manager (or the evaluator when there is none) as reporting head:

    pending --agent responds--> pending (with response) --head decides--> accepted | rejected
"""
from datetime import datetime
from decimal import Decimal
from typing import Optional, Tuple

from flask import current_app
from sqlalchemy import or_

from ..errors import Conflict, Forbidden, ValidationError
from ..extensions import db
from ..models.evaluation import Evaluation, EvaluationFeedback
from ..models.user import User
from .allocation import agent_id_from_metadata

DECISIONS = ("accepted", "rejected")


def should_trigger(score, threshold) -> bool:
    if threshold is None or score is None:
        return False
    return Decimal(str(score)) < Decimal(str(threshold))


def _agent_from_audio(evaluation: Evaluation) -> Optional[User]:
    audio = evaluation.audio_file
    if audio is None:
        return None
    raw = agent_id_from_metadata(audio.call_metrics)
    if raw is None:
        current_app.logger.info("evaluation %s: no agent id in call metadata of audio file %s",
                                evaluation.id, audio.id)
        return None
    try:
        agent_id = int(raw)
    except ValueError:
        current_app.logger.warning("evaluation %s: agent id %r is not a user id", evaluation.id, raw)
        return None
    agent = User.query.filter_by(id=agent_id, org_id=evaluation.org_id).first()
    if agent is None:
        current_app.logger.warning("evaluation %s: agent %s not found in organization", evaluation.id, agent_id)
    return agent


def resolve_recipient(evaluation: Evaluation) -> Optional[Tuple[User, int]]:
    """Return (agent, reporting_head_id), or None when nobody can receive it."""
    agent = evaluation.trainee
    if agent is None and evaluation.evaluation_type == "audio":
        agent = _agent_from_audio(evaluation)
    if agent is None:
        return None
    return agent, agent.manager_id or evaluation.evaluator_id


def open_feedback(evaluation: Evaluation) -> Optional[EvaluationFeedback]:
    """Create the feedback row for a freshly scored evaluation, if one is due.

    Runs inside the caller's transaction.
    """
    if not should_trigger(evaluation.final_score, evaluation.feedback_threshold):
        return None
    recipient = resolve_recipient(evaluation)
    if recipient is None:
        current_app.logger.info("evaluation %s below threshold but no agent to route feedback to", evaluation.id)
        return None
    agent, head_id = recipient
    fb = EvaluationFeedback(
        evaluation_id=evaluation.id,
        agent_id=agent.id,
        reporting_head_id=head_id,
        status="pending",
    )
    db.session.add(fb)
    db.session.flush()
    current_app.logger.info("feedback %s opened for agent %s (score %s < %s)",
                            fb.id, agent.id, evaluation.final_score, evaluation.feedback_threshold)
    return fb


def _require_open(fb: EvaluationFeedback):
    if fb.is_terminal:
        raise Conflict(f"Feedback already {fb.status}")


def record_agent_response(fb: EvaluationFeedback, user: User, response: str) -> EvaluationFeedback:
    if fb.agent_id != user.id:
        raise Forbidden("Only the evaluated agent can respond to this feedback")
    _require_open(fb)
    if fb.agent_response_date is not None:
        raise Conflict("Agent response already recorded")
    text = (response or "").strip()
    if not text:
        raise ValidationError("Response text is required")
    fb.agent_response = text
    fb.agent_response_date = datetime.utcnow()
    return fb


def review_feedback(fb: EvaluationFeedback, user: User, decision: str, response: Optional[str] = None,
                    rejection_reason: Optional[str] = None) -> EvaluationFeedback:
    if fb.reporting_head_id != user.id and not user.is_supervisor:
        raise Forbidden("Only the reporting head can review this feedback")
    _require_open(fb)
    if decision not in DECISIONS:
        raise ValidationError("Status must be accepted or rejected")
    if fb.agent_response_date is None:
        raise Conflict("The agent has not responded yet")
    if decision == "rejected" and not (rejection_reason or "").strip():
        raise ValidationError("A rejection reason is required")
    fb.status = decision
    fb.reporting_head_response = (response or "").strip() or None
    fb.reporting_head_response_date = datetime.utcnow()
    fb.rejection_reason = rejection_reason.strip() if decision == "rejected" else None
    return fb


def _org_query(user: User):
    return (
        EvaluationFeedback.query
        .join(Evaluation, Evaluation.id == EvaluationFeedback.evaluation_id)
        .filter(Evaluation.org_id == user.org_id)
    )


def feedback_for_user(user: User):
    """Feedback visible to a user, newest first.

    Analysts see feedback on evaluations they performed, agents see their
    own, managers see what they review and everyone else sees the org.
    """
    q = _org_query(user)
    if user.role == "quality_analyst":
        q = q.filter(Evaluation.evaluator_id == user.id)
    elif user.role in ("trainee", "advisor"):
        q = q.filter(EvaluationFeedback.agent_id == user.id)
    elif user.role in ("manager", "team_lead"):
        q = q.filter(or_(EvaluationFeedback.reporting_head_id == user.id, EvaluationFeedback.agent_id == user.id))
    return q.order_by(EvaluationFeedback.created_at.desc(), EvaluationFeedback.id.desc()).all()


def pending_for_agent(user: User):
    return (
        _org_query(user)
        .filter(EvaluationFeedback.agent_id == user.id, EvaluationFeedback.status == "pending",
                EvaluationFeedback.agent_response_date.is_(None))
        .order_by(EvaluationFeedback.id.desc())
        .all()
    )


def pending_for_reporting_head(user: User):
    return (
        _org_query(user)
        .filter(EvaluationFeedback.reporting_head_id == user.id, EvaluationFeedback.status == "pending",
                EvaluationFeedback.agent_response_date.isnot(None))
        .order_by(EvaluationFeedback.id.desc())
        .all()
    )


def can_view(fb: EvaluationFeedback, user: User) -> bool:
    ev = fb.evaluation
    if ev is None or ev.org_id != user.org_id:
        return False
    if user.id in (fb.agent_id, fb.reporting_head_id, ev.evaluator_id):
        return True
    return user.role not in ("quality_analyst", "trainee", "advisor")
