"""Application errors and their JSON rendering.

Every error leaves the API as ``{"message": ..., **context}`` with the
status code carried by the exception.
"""
from typing import Any, Dict, Optional

from flask import jsonify
from werkzeug.exceptions import HTTPException

from .extensions import db


class AppError(Exception):
    """Base exception for application errors."""

    status_code = 500

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        body = dict(self.context)
        body["message"] = self.message
        return body


class ValidationError(AppError):
    status_code = 400


class Forbidden(AppError):
    status_code = 403


class NotFound(AppError):
    status_code = 404


class Conflict(AppError):
    status_code = 409


class ServiceUnavailable(AppError):
    status_code = 503


def register_error_handlers(app):
    @app.errorhandler(AppError)
    def handle_app_error(err):
        if err.status_code >= 500:
            app.logger.error("%s: %s", type(err).__name__, err.message)
        return jsonify(err.to_dict()), err.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(err):
        return jsonify({"message": err.description or err.name}), err.code

    @app.errorhandler(Exception)
    def handle_unexpected(err):
        db.session.rollback()
        app.logger.exception("Unhandled error")
        return jsonify({"message": str(err) or "Internal server error"}), 500
