from flask import Blueprint

bp = Blueprint("storage", __name__)

from . import routes  # noqa: E402,F401
