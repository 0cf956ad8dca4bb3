from ..extensions import db
from .base import OrgScopedMixin, TimestampMixin, _num

TEMPLATE_STATUSES = ("draft", "active", "archived")
RATING_TYPES = ("yes_no_na", "numeric", "custom")


class EvaluationTemplate(db.Model, OrgScopedMixin, TimestampMixin):
    __tablename__ = "evaluation_templates"
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    process_id = db.Column(db.Integer)
    batch_id = db.Column(db.Integer)
    status = db.Column(db.String(20), nullable=False, default="draft")
    feedback_threshold = db.Column(db.Numeric(5, 2))
    created_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False)

    pillars = db.relationship(
        "EvaluationPillar", backref="template", order_by="EvaluationPillar.order_index",
        cascade="all, delete-orphan",
    )

    def parameters(self):
        return [p for pillar in self.pillars for p in pillar.parameters]

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "processId": self.process_id,
            "batchId": self.batch_id,
            "status": self.status,
            "feedbackThreshold": _num(self.feedback_threshold),
            "createdBy": self.created_by,
            "pillars": [p.to_dict() for p in self.pillars],
        }


class EvaluationPillar(db.Model, TimestampMixin):
    __tablename__ = "evaluation_pillars"
    id = db.Column(db.Integer, primary_key=True)
    template_id = db.Column(db.Integer, db.ForeignKey("evaluation_templates.id"), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    weightage = db.Column(db.Integer, nullable=False, default=0)
    order_index = db.Column(db.Integer, nullable=False, default=0)

    parameters = db.relationship(
        "EvaluationParameter", backref="pillar", order_by="EvaluationParameter.order_index",
        cascade="all, delete-orphan",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "weightage": self.weightage,
            "orderIndex": self.order_index,
            "parameters": [p.to_dict() for p in self.parameters],
        }


class EvaluationParameter(db.Model, TimestampMixin):
    __tablename__ = "evaluation_parameters"
    id = db.Column(db.Integer, primary_key=True)
    pillar_id = db.Column(db.Integer, db.ForeignKey("evaluation_pillars.id"), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text)
    guidelines = db.Column(db.Text)
    rating_type = db.Column(db.String(20), nullable=False, default="yes_no_na")
    weightage = db.Column(db.Integer, nullable=False, default=0)
    weightage_enabled = db.Column(db.Boolean, nullable=False, default=True)
    is_fatal = db.Column(db.Boolean, nullable=False, default=False)
    requires_comment = db.Column(db.Boolean, nullable=False, default=False)
    no_reasons = db.Column(db.JSON)
    custom_scale = db.Column(db.JSON)  # rating label -> 0..100
    order_index = db.Column(db.Integer, nullable=False, default=0)

    def to_dict(self):
        return {
            "id": self.id,
            "pillarId": self.pillar_id,
            "name": self.name,
            "description": self.description,
            "guidelines": self.guidelines,
            "ratingType": self.rating_type,
            "weightage": self.weightage,
            "weightageEnabled": self.weightage_enabled,
            "isFatal": self.is_fatal,
            "requiresComment": self.requires_comment,
            "noReasons": self.no_reasons or [],
            "customScale": self.custom_scale,
            "orderIndex": self.order_index,
        }
