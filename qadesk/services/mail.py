from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail
from flask import current_app


def send_mail(to_email, subject, html):
    api_key = current_app.config.get('SENDGRID_API_KEY')
    if not api_key:
        raise RuntimeError('SENDGRID_API_KEY is not configured')
    sg = SendGridAPIClient(api_key=api_key)
    message = Mail(from_email=(current_app.config['MAIL_FROM'], current_app.config['MAIL_FROM_NAME']),
                   to_emails=to_email,
                   subject=subject,
                   html_content=html)
    resp = sg.send(message)
    return resp.status_code, getattr(resp, 'headers', None)


def feedback_opened_body(agent, evaluation):
    name = agent.full_name or agent.email
    return (
        f"<p>Hello {name},</p>"
        f"<p>Your evaluation #{evaluation.id} scored <strong>{evaluation.final_score}</strong>, "
        f"below the feedback threshold of {evaluation.feedback_threshold}.</p>"
        "<p>Please review the evaluation and record your response.</p>"
    )
