from ..extensions import db

class OrgScopedMixin:
    org_id = db.Column(db.Integer, nullable=False, index=True)

class TimestampMixin:
    created_at = db.Column(db.DateTime, server_default=db.func.now())
    updated_at = db.Column(db.DateTime, server_default=db.func.now(), onupdate=db.func.now())


def _iso(value):
    return value.isoformat() if value is not None else None


def _num(value):
    # Numeric columns come back as Decimal
    return float(value) if value is not None else None
