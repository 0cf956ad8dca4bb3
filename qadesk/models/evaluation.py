from ..extensions import db
from .base import OrgScopedMixin, TimestampMixin, _iso, _num

EVALUATION_TYPES = ("standard", "audio", "certification")
FEEDBACK_STATUSES = ("pending", "accepted", "rejected")


class Evaluation(db.Model, OrgScopedMixin, TimestampMixin):
    __tablename__ = "evaluations"
    id = db.Column(db.Integer, primary_key=True)
    template_id = db.Column(db.Integer, db.ForeignKey("evaluation_templates.id"), nullable=False)
    evaluation_type = db.Column(db.String(20), nullable=False, default="standard")
    trainee_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    batch_id = db.Column(db.Integer)
    evaluator_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)
    final_score = db.Column(db.Numeric(5, 2), nullable=False)
    has_fatal_error = db.Column(db.Boolean, nullable=False, default=False)
    status = db.Column(db.String(20), nullable=False, default="completed")
    feedback_threshold = db.Column(db.Numeric(5, 2))
    audio_file_id = db.Column(db.Integer, db.ForeignKey("audio_files.id"), nullable=True)

    template = db.relationship("EvaluationTemplate")
    trainee = db.relationship("User", foreign_keys=[trainee_id])
    evaluator = db.relationship("User", foreign_keys=[evaluator_id])
    audio_file = db.relationship("AudioFile", foreign_keys=[audio_file_id])
    scores = db.relationship("EvaluationScore", backref="evaluation", cascade="all, delete-orphan")

    def to_dict(self, include_scores=True):
        out = {
            "id": self.id,
            "templateId": self.template_id,
            "evaluationType": self.evaluation_type,
            "traineeId": self.trainee_id,
            "batchId": self.batch_id,
            "evaluatorId": self.evaluator_id,
            "finalScore": _num(self.final_score),
            "hasFatalError": self.has_fatal_error,
            "status": self.status,
            "feedbackThreshold": _num(self.feedback_threshold),
            "audioFileId": self.audio_file_id,
            "createdAt": _iso(self.created_at),
        }
        if include_scores:
            out["scores"] = [s.to_dict() for s in self.scores]
        return out


class EvaluationScore(db.Model, TimestampMixin):
    __tablename__ = "evaluation_scores"
    id = db.Column(db.Integer, primary_key=True)
    evaluation_id = db.Column(db.Integer, db.ForeignKey("evaluations.id"), nullable=False)
    parameter_id = db.Column(db.Integer, db.ForeignKey("evaluation_parameters.id"), nullable=False)
    score = db.Column(db.String(32), nullable=False)  # raw rating as entered
    comment = db.Column(db.Text)
    no_reason = db.Column(db.String(255))

    def to_dict(self):
        return {
            "parameterId": self.parameter_id,
            "score": self.score,
            "comment": self.comment,
            "noReason": self.no_reason,
        }


class EvaluationFeedback(db.Model, TimestampMixin):
    __tablename__ = "evaluation_feedback"
    id = db.Column(db.Integer, primary_key=True)
    evaluation_id = db.Column(db.Integer, db.ForeignKey("evaluations.id"), nullable=False)
    agent_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    reporting_head_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    status = db.Column(db.String(20), nullable=False, default="pending")
    agent_response = db.Column(db.Text)
    agent_response_date = db.Column(db.DateTime)
    reporting_head_response = db.Column(db.Text)
    reporting_head_response_date = db.Column(db.DateTime)
    rejection_reason = db.Column(db.Text)

    evaluation = db.relationship("Evaluation", backref=db.backref("feedback", uselist=False))

    @property
    def is_terminal(self):
        return self.status in ("accepted", "rejected")

    def to_dict(self):
        ev = self.evaluation
        return {
            "id": self.id,
            "evaluationId": self.evaluation_id,
            "agentId": self.agent_id,
            "reportingHeadId": self.reporting_head_id,
            "status": self.status,
            "agentResponse": self.agent_response,
            "agentResponseDate": _iso(self.agent_response_date),
            "reportingHeadResponse": self.reporting_head_response,
            "reportingHeadResponseDate": _iso(self.reporting_head_response_date),
            "rejectionReason": self.rejection_reason,
            "finalScore": _num(ev.final_score) if ev is not None else None,
            "createdAt": _iso(self.created_at),
        }
