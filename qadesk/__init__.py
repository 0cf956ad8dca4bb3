import os

from flask import Flask, jsonify

from .errors import register_error_handlers
from .extensions import db, login_manager, migrate, rq


def create_app(config_overrides=None):
    """App factory.

    ``config_overrides`` is applied on top of ``config.Config``; tests use it
    to point the app at a throwaway database and the local storage backend.
    """
    app = Flask(__name__)
    app.config.from_object('config.Config')
    if config_overrides:
        app.config.update(config_overrides)
    if not app.config.get('MAX_CONTENT_LENGTH'):
        app.config['MAX_CONTENT_LENGTH'] = app.config.get('MAX_UPLOAD_MB', 50) * 1024 * 1024
    app.logger.setLevel(app.config.get('LOG_LEVEL', 'INFO'))

    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    rq.init_app(app)

    from .services.storage import build_blob_client
    app.extensions['blob_client'] = build_blob_client(app)

    @login_manager.user_loader
    def load_user(user_id):
        from .models.user import User
        return db.session.get(User, int(user_id))

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({'message': 'Unauthorized'}), 401

    register_error_handlers(app)

    from .blueprints.auth import bp as auth_bp
    from .blueprints.storage import bp as storage_bp
    from .blueprints.audio import bp as audio_bp
    from .blueprints.evaluations import bp as evaluations_bp
    from .blueprints.feedback import bp as feedback_bp
    app.register_blueprint(auth_bp, url_prefix='/auth')
    app.register_blueprint(storage_bp)
    app.register_blueprint(audio_bp)
    app.register_blueprint(evaluations_bp)
    app.register_blueprint(feedback_bp)

    @app.get('/health')
    def health():
        return jsonify({
            'status': 'ok',
            'storage': app.extensions['blob_client'] is not None,
            'queue': rq.queue is not None,
        })

    if app.config.get('AUTO_CREATE_TABLES') and not os.environ.get('SKIP_CREATE_ALL'):
        from . import models  # noqa: F401
        with app.app_context():
            db.create_all()

    return app
