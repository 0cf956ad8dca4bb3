from flask_wtf import FlaskForm
from wtforms import IntegerField, PasswordField, SelectField, StringField
from wtforms.validators import DataRequired, Email, Length, Optional

from ...models.user import ROLES


class SignupForm(FlaskForm):
    org_name = StringField("Organization", validators=[DataRequired(), Length(max=120)])
    full_name = StringField("Full name", validators=[Optional(), Length(max=255)])
    email = StringField("Admin email", validators=[DataRequired(), Email()])
    password = PasswordField("Password", validators=[DataRequired(), Length(min=8)])


class LoginForm(FlaskForm):
    email = StringField("Email", validators=[DataRequired(), Email()])
    password = PasswordField("Password", validators=[DataRequired()])


class UserForm(FlaskForm):
    email = StringField("Email", validators=[DataRequired(), Email()])
    password = PasswordField("Password", validators=[DataRequired(), Length(min=8)])
    full_name = StringField("Full name", validators=[Optional(), Length(max=255)])
    role = SelectField("Role", choices=[(r, r) for r in ROLES], default="quality_analyst")
    manager_id = IntegerField("Manager", validators=[Optional()])
