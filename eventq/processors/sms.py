from ..jobs import SMS, SmsJob
from ..services import SmsService
from .base import Processor


class SmsProcessor(Processor):
    queue = SMS

    def __init__(self, sms: SmsService):
        self.sms = sms
        super().__init__()

    def _template(self, name: str):
        return lambda data: self.sms.send_template(name, data)

    def handlers(self):
        return {
            SmsJob.OTP: self._template("otp"),
            SmsJob.EVENT_REGISTRATION: self._template("event_registration"),
            SmsJob.EVENT_REMINDER: self._template("event_reminder"),
            SmsJob.CERTIFICATE_READY: self._template("certificate_ready"),
            SmsJob.PASSWORD_RESET: self._template("password_reset"),
            SmsJob.CUSTOM: lambda data: self.sms.send(data.get("phone"), data.get("message", "")),
        }
