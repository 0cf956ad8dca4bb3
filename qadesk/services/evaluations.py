"""Evaluation templates and evaluation submission.

Nothing here commits; routes commit once the whole unit of work succeeded
and roll back otherwise.
"""
from decimal import Decimal, InvalidOperation

from flask import current_app

from ..errors import NotFound, ValidationError
from ..extensions import db
from ..models.audio_file import AudioFile
from ..models.evaluation import EVALUATION_TYPES, Evaluation, EvaluationScore
from ..models.evaluation_template import (
    RATING_TYPES, TEMPLATE_STATUSES, EvaluationParameter, EvaluationPillar, EvaluationTemplate,
)
from ..models.user import User
from ..utils.parsing import coerce_int
from .feedback import open_feedback
from .scoring import normalize_ratings, score_evaluation


def _threshold(value):
    if value is None or value == "":
        return None
    try:
        threshold = Decimal(str(value))
    except InvalidOperation:
        raise ValidationError("Feedback threshold must be a number")
    if threshold < 0 or threshold > 100:
        raise ValidationError("Feedback threshold must be between 0 and 100")
    return threshold


def _weight(value, label):
    if isinstance(value, bool):
        value = None
    elif isinstance(value, float) and value.is_integer():
        value = int(value)
    elif isinstance(value, str) and value.strip().isdigit():
        value = int(value)
    if not isinstance(value, int) or value < 0 or value > 100:
        raise ValidationError(f"Weightage for {label} must be a whole number between 0 and 100")
    return value


def _custom_scale(scale, label):
    if not isinstance(scale, dict) or not scale:
        raise ValidationError(f"Custom parameter {label} needs a customScale mapping labels to scores")
    for key, value in scale.items():
        try:
            score = Decimal(str(value))
        except InvalidOperation:
            score = None
        if isinstance(value, bool) or score is None or not score.is_finite() or score < 0 or score > 100:
            raise ValidationError(
                f"Scale value for {key!r} on {label} must be a number between 0 and 100",
                {"customScale": scale},
            )
    return scale


def _build_parameter(data, index):
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("Every parameter needs a name")
    rating_type = data.get("ratingType", "yes_no_na")
    if rating_type not in RATING_TYPES:
        raise ValidationError(f"Unknown rating type {rating_type!r}", {"allowed": list(RATING_TYPES)})
    scale = data.get("customScale")
    if rating_type == "custom":
        scale = _custom_scale(scale, name)
    elif scale is not None:
        raise ValidationError(f"customScale only applies to custom parameters ({name})")
    return EvaluationParameter(
        name=name,
        description=data.get("description"),
        guidelines=data.get("guidelines"),
        rating_type=rating_type,
        weightage=_weight(data.get("weightage", 0), name),
        weightage_enabled=bool(data.get("weightageEnabled", True)),
        is_fatal=bool(data.get("isFatal", False)),
        requires_comment=bool(data.get("requiresComment", False)),
        no_reasons=list(data.get("noReasons") or []),
        custom_scale=scale,
        order_index=coerce_int(data.get("orderIndex"), index),
    )


def create_template(org_id: int, user_id: int, data: dict) -> EvaluationTemplate:
    name = (data.get("name") or "").strip()
    if not name:
        raise ValidationError("Template name is required")
    status = data.get("status", "draft")
    if status not in TEMPLATE_STATUSES:
        raise ValidationError(f"Unknown template status {status!r}")

    template = EvaluationTemplate(
        org_id=org_id,
        name=name,
        description=data.get("description"),
        process_id=coerce_int(data.get("processId")),
        batch_id=coerce_int(data.get("batchId")),
        status=status,
        feedback_threshold=_threshold(data.get("feedbackThreshold")),
        created_by=user_id,
    )
    for i, p in enumerate(data.get("pillars") or []):
        pname = (p.get("name") or "").strip()
        if not pname:
            raise ValidationError("Every pillar needs a name")
        pillar = EvaluationPillar(
            name=pname,
            description=p.get("description"),
            weightage=_weight(p.get("weightage", 0), pname),
            order_index=coerce_int(p.get("orderIndex"), i),
        )
        pillar.parameters = [_build_parameter(param, j) for j, param in enumerate(p.get("parameters") or [])]
        template.pillars.append(pillar)
    db.session.add(template)
    db.session.flush()
    return template


def update_template(template: EvaluationTemplate, data: dict) -> EvaluationTemplate:
    if "name" in data:
        name = (data.get("name") or "").strip()
        if not name:
            raise ValidationError("Template name is required")
        template.name = name
    if "description" in data:
        template.description = data.get("description")
    if "status" in data:
        if data["status"] not in TEMPLATE_STATUSES:
            raise ValidationError(f"Unknown template status {data['status']!r}")
        template.status = data["status"]
    if "feedbackThreshold" in data:
        template.feedback_threshold = _threshold(data.get("feedbackThreshold"))
    return template


def get_template(org_id: int, template_id) -> EvaluationTemplate:
    template = EvaluationTemplate.query.filter_by(id=coerce_int(template_id), org_id=org_id).first()
    if template is None:
        raise NotFound("Evaluation template not found")
    return template


def _org_user(org_id, user_id, label):
    if user_id is None:
        return None
    user = User.query.filter_by(id=user_id, org_id=org_id).first()
    if user is None:
        raise ValidationError(f"Unknown {label}", {f"{label}Id": user_id})
    return user


def submit_evaluation(org_id: int, evaluator_id: int, data: dict):
    """Score and store an evaluation.

    Returns (evaluation, feedback or None, ScoreResult).
    """
    template = get_template(org_id, data.get("templateId"))
    if template.status == "archived":
        raise ValidationError("Template is archived")

    trainee_id = coerce_int(data.get("traineeId"))
    _org_user(org_id, trainee_id, "trainee")
    evaluator_id = coerce_int(data.get("evaluatorId"), evaluator_id)
    _org_user(org_id, evaluator_id, "evaluator")

    evaluation_type = data.get("evaluationType") or "standard"
    if evaluation_type not in EVALUATION_TYPES:
        raise ValidationError(f"Unknown evaluation type {evaluation_type!r}")

    audio = None
    audio_id = coerce_int(data.get("audioFileId"))
    if audio_id is not None:
        audio = AudioFile.query.filter_by(id=audio_id, org_id=org_id).first()
        if audio is None:
            raise NotFound("Audio file not found")
        if audio.status == "evaluated":
            raise ValidationError("Audio file has already been evaluated")

    ratings = normalize_ratings(data.get("scores") or [])
    result = score_evaluation(template.pillars, ratings)

    evaluation = Evaluation(
        org_id=org_id,
        template_id=template.id,
        evaluation_type="audio" if audio is not None else evaluation_type,
        trainee_id=trainee_id,
        batch_id=coerce_int(data.get("batchId")),
        evaluator_id=evaluator_id,
        final_score=result.final_score,
        has_fatal_error=result.has_fatal_error,
        status="completed",
        feedback_threshold=template.feedback_threshold,
        audio_file_id=audio.id if audio is not None else None,
    )
    evaluation.scores = [
        EvaluationScore(parameter_id=pid, score=r.score, comment=r.comment, no_reason=r.no_reason)
        for pid, r in ratings.items()
    ]
    db.session.add(evaluation)
    db.session.flush()

    if audio is not None:
        audio.status = "evaluated"
        audio.evaluation_id = evaluation.id
        if audio.allocation is not None:
            audio.allocation.status = "evaluated"
            audio.allocation.evaluation_id = evaluation.id

    current_app.logger.info("evaluation %s scored %s (fatal=%s) on template %s",
                            evaluation.id, result.final_score, result.has_fatal_error, template.id)
    feedback = open_feedback(evaluation)
    return evaluation, feedback, result
