"""Transport adapters for outgoing email and SMS.

Both raise on delivery failure so the calling job is retried.
"""

import logging
import smtplib
import ssl
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import make_msgid
from typing import Any, Dict, Optional

from twilio.rest import Client

from .config import SMTP_SETTINGS, TWILIO_SETTINGS

logger = logging.getLogger(__name__)


class SmtpEmailSender:
    def __init__(self, host: Optional[str] = None, port: Optional[int] = None,
                 username: Optional[str] = None, password: Optional[str] = None,
                 use_tls: Optional[bool] = None, from_address: Optional[str] = None):
        self.host = host or SMTP_SETTINGS["host"]
        self.port = port or SMTP_SETTINGS["port"]
        self.username = username if username is not None else SMTP_SETTINGS["username"]
        self.password = password if password is not None else SMTP_SETTINGS["password"]
        self.use_tls = SMTP_SETTINGS["use_tls"] if use_tls is None else use_tls
        self.from_address = from_address or SMTP_SETTINGS["from_address"]

    def send(self, message: Dict[str, Any]) -> Dict[str, Any]:
        if not message.get("to"):
            raise ValueError("Email recipient is required")
        msg = MIMEMultipart("alternative")
        msg["Subject"] = message.get("subject", "")
        msg["From"] = self.from_address
        msg["To"] = message["to"]
        msg["Message-ID"] = make_msgid()
        if message.get("text"):
            msg.attach(MIMEText(message["text"], "plain"))
        msg.attach(MIMEText(message.get("html") or message.get("text") or "", "html"))

        with smtplib.SMTP(self.host, self.port, timeout=30) as server:
            if self.use_tls:
                server.starttls(context=ssl.create_default_context())
            if self.username:
                server.login(self.username, self.password)
            server.send_message(msg)
        logger.info("Email sent to %s: %s", message["to"], msg["Subject"])
        return {"success": True, "messageId": msg["Message-ID"]}


class TwilioSmsSender:
    def __init__(self, account_sid: Optional[str] = None, auth_token: Optional[str] = None,
                 from_number: Optional[str] = None, client: Optional[Client] = None):
        self.from_number = from_number or TWILIO_SETTINGS["from_number"]
        sid = account_sid or TWILIO_SETTINGS["account_sid"]
        token = auth_token or TWILIO_SETTINGS["auth_token"]
        self._client = client or (Client(sid, token) if sid and token else None)

    def send(self, phone: str, message: str) -> Dict[str, Any]:
        if self._client is None or not self.from_number:
            raise RuntimeError("Twilio credentials are not configured")
        if not phone:
            raise ValueError("Phone number is required")
        result = self._client.messages.create(body=message, from_=self.from_number, to=phone)
        logger.info("SMS sent to %s: %s", phone, result.sid)
        return {"success": True, "messageId": result.sid}
