from flask import Blueprint

bp = Blueprint("audio", __name__)

from . import routes  # noqa: E402,F401
