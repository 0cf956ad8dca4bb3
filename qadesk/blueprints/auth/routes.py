from flask import current_app, jsonify
from flask_login import login_user, logout_user, login_required, current_user
from . import bp
from ...errors import ValidationError, Conflict, Forbidden
from ...extensions import db
from .forms import LoginForm, SignupForm, UserForm
from ...models.organization import Organization
from ...models.user import User
from ...utils.decorators import admin_required


def _form_errors(form):
    raise ValidationError("Invalid input", {"errors": form.errors})


@bp.route("/login", methods=["POST"])
def login():
    form = LoginForm()
    if not form.validate_on_submit():
        _form_errors(form)
    user = User.query.filter_by(email=form.email.data.strip().lower()).first()
    if not user or not user.active or not user.check_password(form.password.data):
        return jsonify({"message": "Invalid credentials"}), 401
    login_user(user)
    current_app.logger.info("user %s logged in", user.id)
    return jsonify(user.to_dict())


@bp.route("/logout", methods=["POST"])
@login_required
def logout():
    logout_user()
    return jsonify({"message": "Logged out"})


@bp.get("/me")
@login_required
def me():
    return jsonify(current_user.to_dict())


@bp.route("/signup", methods=["POST"])
def signup():
    """First user: anyone may sign up. Afterwards: admins only."""
    user_exists = User.query.first() is not None
    if user_exists and (not current_user.is_authenticated or not current_user.is_supervisor):
        raise Forbidden("Only administrators can create accounts")

    form = SignupForm()
    if not form.validate_on_submit():
        _form_errors(form)
    email = form.email.data.strip().lower()
    if User.query.filter_by(email=email).first():
        raise Conflict("A user with this email already exists")
    org = Organization.query.filter_by(name=form.org_name.data).first()
    if not org:
        org = Organization(name=form.org_name.data)
        db.session.add(org)
        db.session.flush()
    user = User(org_id=org.id, email=email, full_name=form.full_name.data, role="admin")
    user.set_password(form.password.data)
    db.session.add(user)
    db.session.commit()
    current_app.logger.info("organization %s admin %s created", org.id, user.id)
    return jsonify(user.to_dict()), 201


@bp.get("/users")
@admin_required
def users_index():
    users = User.query.filter_by(org_id=current_user.org_id).order_by(User.id).all()
    return jsonify([u.to_dict() for u in users])


@bp.post("/users")
@admin_required
def create_user():
    form = UserForm()
    if not form.validate_on_submit():
        _form_errors(form)
    email = form.email.data.strip().lower()
    if User.query.filter_by(email=email).first():
        raise Conflict("A user with this email already exists")
    manager_id = form.manager_id.data
    if manager_id is not None and not User.query.filter_by(id=manager_id, org_id=current_user.org_id).first():
        raise ValidationError("Unknown manager", {"managerId": manager_id})
    user = User(org_id=current_user.org_id, email=email, full_name=form.full_name.data,
                role=form.role.data, manager_id=manager_id)
    user.set_password(form.password.data)
    db.session.add(user)
    db.session.commit()
    return jsonify(user.to_dict()), 201
