import atexit
from concurrent.futures import ThreadPoolExecutor

import resend
from flask import current_app

from models import ErrorLog, Notification, db


def notify(recipient_id, sender, message, type="info"):
    """Queue an in-app notification on the current session.

    The caller owns the commit so the notification lands in the same
    transaction as the change it describes.
    """
    row = Notification(
        recipient_id=recipient_id,
        sender_id=sender.id if sender is not None else None,
        message=message,
        type=type,
    )
    db.session.add(row)
    return row


def send_email(user, subject, body):
    if user is None:
        return None
    return current_app.extensions["mailer"].send(user.email, subject, body)


class Mailer:
    """Best-effort email delivery through Resend.

    Sends never raise into the caller. Failures are logged and written to
    the error log table with source ``mailer``.
    """

    def __init__(self, app=None):
        self.app = None
        self.executor = None
        if app is not None:
            self.init_app(app)

    def init_app(self, app):
        self.app = app
        self.sender = app.config["MAIL_SENDER"]
        self.api_key = (app.config.get("RESEND_API_KEY") or "").strip()
        if self.api_key:
            resend.api_key = self.api_key
        if app.config["MAIL_ASYNC"]:
            self.executor = ThreadPoolExecutor(
                max_workers=app.config["MAIL_WORKERS"],
                thread_name_prefix="mailer",
            )
            atexit.register(self.executor.shutdown)
        app.extensions["mailer"] = self

    def send(self, recipient, subject, body):
        if not recipient:
            self.app.logger.info("Skipping email %r: recipient has no address", subject)
            return None
        if not self.api_key:
            self.app.logger.info("Skipping email %r to %s: Resend API key is not configured", subject, recipient)
            return None

        payload = {
            "from": self.sender,
            "to": [recipient],
            "subject": subject,
            "text": body,
        }
        if self.executor is not None:
            return self.executor.submit(self._deliver, payload)
        return self._deliver(payload)

    def _deliver(self, payload):
        with self.app.app_context():
            try:
                response = resend.Emails.send(payload)
            except Exception as exc:
                self._record_failure(payload, str(exc))
                return False

            if not isinstance(response, dict) or not response.get("id"):
                self._record_failure(payload, str(response))
                return False

            self.app.logger.info("Email %r delivered to %s", payload["subject"], payload["to"][0])
            return True

    def _record_failure(self, payload, details):
        message = f"Email {payload['subject']!r} to {payload['to'][0]} failed: {details}"
        self.app.logger.warning(message)
        try:
            db.session.add(ErrorLog(source="mailer", severity="warning", message=message))
            db.session.commit()
        except Exception:
            db.session.rollback()
            self.app.logger.exception("Unable to record mailer failure")
