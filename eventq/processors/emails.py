from ..jobs import EMAIL, EmailJob
from ..services import EmailService
from .base import Processor


class EmailProcessor(Processor):
    queue = EMAIL

    def __init__(self, email: EmailService):
        self.email = email
        super().__init__()

    def _template(self, name: str):
        return lambda data: self.email.send_template(name, data)

    def handlers(self):
        return {
            EmailJob.WELCOME: self._template("welcome"),
            EmailJob.EVENT_REGISTRATION: self._template("event_registration"),
            EmailJob.EVENT_REMINDER: self._template("event_reminder"),
            EmailJob.EVENT_UPDATE: self._template("event_update"),
            EmailJob.CERTIFICATE_READY: self._template("certificate_ready"),
            EmailJob.PASSWORD_RESET: self._template("password_reset"),
            EmailJob.FEEDBACK_REQUEST: self._template("feedback_request"),
            # {to, subject, html, text} sent as given
            EmailJob.CUSTOM: self.email.send,
        }
