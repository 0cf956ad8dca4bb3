from flask_sqlalchemy import SQLAlchemy
from flask_login import LoginManager
from flask_migrate import Migrate
from redis import Redis
from rq import Queue
from flask import current_app

# kwargs understood by Queue.enqueue but not by the job function itself
_RQ_KEYS = {'job_timeout', 'timeout', 'at_front', 'depends_on', 'result_ttl', 'ttl', 'meta', 'description'}


class RQWrapper:
    def __init__(self):
        self.redis = None
        self.queue = None

    def init_app(self, app):
        try:
            self.redis = Redis.from_url(app.config.get("REDIS_URL"))
            self.queue = Queue("default", connection=self.redis)
        except Exception:
            # no redis on this machine; jobs run inline
            app.logger.exception('Redis/RQ init failed, falling back to sync execution')
            self.redis = None
            self.queue = None

    def _run_inline(self, func, args, kwargs):
        safe_kwargs = {k: v for k, v in kwargs.items() if k not in _RQ_KEYS}
        try:
            return func(*args, **safe_kwargs)
        except Exception:
            current_app.logger.exception('Synchronous execution of %s failed', getattr(func, '__name__', func))
        return None

    def enqueue(self, func, *args, **kwargs):
        """Enqueue to RQ when reachable, otherwise run the job in-process."""
        if not self.queue:
            return self._run_inline(func, args, kwargs)
        try:
            return self.queue.enqueue(func, *args, **kwargs)
        except Exception:
            current_app.logger.exception('RQ enqueue failed, falling back to sync execution')
            return self._run_inline(func, args, kwargs)


db = SQLAlchemy()
migrate = Migrate()
login_manager = LoginManager()
rq = RQWrapper()
