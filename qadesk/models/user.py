from ..extensions import db
from flask_login import UserMixin
from .base import TimestampMixin
from werkzeug.security import generate_password_hash, check_password_hash

ROLES = ("owner", "admin", "manager", "team_lead", "quality_analyst", "trainer", "advisor", "trainee")
# roles that see and review everything in their organization
SUPERVISOR_ROLES = ("owner", "admin")

class User(db.Model, UserMixin, TimestampMixin):
    __tablename__ = "users"
    id = db.Column(db.Integer, primary_key=True)
    org_id = db.Column(db.Integer, nullable=False, index=True)
    email = db.Column(db.String(255), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)
    full_name = db.Column(db.String(255))
    role = db.Column(db.String(50), default="admin")
    manager_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    active = db.Column(db.Boolean, default=True, nullable=False)

    manager = db.relationship("User", remote_side=[id], uselist=False)

    def set_password(self, raw):
        self.password_hash = generate_password_hash(raw)

    def check_password(self, raw):
        return check_password_hash(self.password_hash, raw)

    @property
    def is_supervisor(self):
        return self.role in SUPERVISOR_ROLES

    def to_dict(self):
        return {
            "id": self.id,
            "orgId": self.org_id,
            "email": self.email,
            "fullName": self.full_name,
            "role": self.role,
            "managerId": self.manager_id,
            "active": self.active,
        }
