from datetime import datetime
from flask import current_app, has_app_context
from ..extensions import db
from ..services.mail import send_mail, feedback_opened_body
from ..models.evaluation import EvaluationFeedback
from ..models.notification import Notification
from ..models.user import User


def _run_notify_feedback(feedback_id: int):
    fb = EvaluationFeedback.query.get(feedback_id)
    if fb is None:
        current_app.logger.warning('notify: feedback %s no longer exists', feedback_id)
        return None
    agent = User.query.get(fb.agent_id)
    ev = fb.evaluation
    subject = f"Feedback requested on evaluation #{ev.id}"
    body = feedback_opened_body(agent, ev)
    status, headers = send_mail(agent.email, subject, body)
    n = Notification(org_id=ev.org_id, feedback_id=fb.id,
                     type="sendgrid", sent_to=agent.email, subject=subject,
                     body=body, provider_message_id=str((headers or {}).get('X-Message-Id', '')),
                     sent_at=datetime.utcnow())
    db.session.add(n); db.session.commit()
    current_app.logger.info('notify: feedback %s mailed to %s (status %s)', fb.id, agent.email, status)
    return n.id


def notify_feedback_opened(feedback_id: int):
    """RQ entrypoint: the worker has no request, so bring up an app context."""
    if has_app_context():
        return _run_notify_feedback(feedback_id)
    from .. import create_app
    app = create_app()
    with app.app_context():
        return _run_notify_feedback(feedback_id)
