"""
Domain services the queue processors call into.

Email and SMS go through pluggable senders, notifications and certificates
are written through the store. Permanent problems (unknown template, missing
recipient) come back as `{"success": False, "error": ...}`; transport errors
propagate so the job is retried.
"""

import hashlib
import logging
import os
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from jinja2 import Template

from .config import CERTIFICATE_DIR, FRONTEND_URL
from .pdf import CertificateRenderer
from .qr import QRCodec
from .store import (
    Certificate, MemoryStore, Notification, default_expiry, new_id,
)
from .utils import to_iso, utcnow

logger = logging.getLogger(__name__)

TEMPLATE_NOT_FOUND = "template_not_found"
MISSING_RECIPIENT = "missing_recipient"

EMAIL_TEMPLATES = {
    "welcome": (
        "Welcome, {{ name }}!",
        "<p>Hi {{ name }},</p><p>Your account is ready. Browse upcoming events and register in one click.</p>",
    ),
    "event_registration": (
        "Registration confirmed: {{ eventTitle }}",
        "<p>Hi {{ name }},</p><p>You are registered for <b>{{ eventTitle }}</b>"
        "{% if eventDate %} on {{ eventDate }}{% endif %}{% if eventVenue %} at {{ eventVenue }}{% endif %}.</p>"
        "<p>Show your ticket QR code at the entrance.</p>",
    ),
    "event_reminder": (
        "Reminder: {{ eventTitle }} starts {% if reminderType == '1h' %}in 1 hour{% else %}tomorrow{% endif %}",
        "<p>Hi {{ name }},</p><p><b>{{ eventTitle }}</b> starts "
        "{% if reminderType == '1h' %}in one hour{% else %}in 24 hours{% endif %}"
        "{% if eventVenue %} at {{ eventVenue }}{% endif %}.</p>",
    ),
    "event_update": (
        "Event Update: {{ eventTitle }}",
        "<p>Hi {{ name }},</p><p>There is an update for <b>{{ eventTitle }}</b>:</p><p>{{ message }}</p>",
    ),
    "certificate_ready": (
        "Your certificate for {{ eventTitle }} is ready",
        "<p>Hi {{ name }},</p><p>Your certificate for <b>{{ eventTitle }}</b> has been issued."
        "{% if certificateNumber %} Certificate number: {{ certificateNumber }}.{% endif %}</p>",
    ),
    "password_reset": (
        "Reset your password",
        "<p>Hi {{ name }},</p><p>Use the link below to reset your password. It expires in one hour.</p>"
        "<p><a href=\"{{ resetUrl }}\">{{ resetUrl }}</a></p>",
    ),
    "feedback_request": (
        "How was {{ eventTitle }}?",
        "<p>Hi {{ name }},</p><p>Thanks for attending <b>{{ eventTitle }}</b>. "
        "Tell us how it went, it takes a minute.</p>",
    ),
}

SMS_TEMPLATES = {
    "otp": "Your verification code is {{ otp }}. It expires in 10 minutes.",
    "event_registration": "You're registered for {{ eventTitle }}{% if eventDate %} on {{ eventDate }}{% endif %}.",
    "event_reminder": "Reminder: {{ eventTitle }} starts {% if reminderType == '1h' %}in 1 hour{% else %}tomorrow{% endif %}.",
    "certificate_ready": "Your certificate for {{ eventTitle }} is ready.",
    "password_reset": "Your password reset code is {{ code }}.",
}


class EmailService:
    def __init__(self, sender, store: Optional[MemoryStore] = None):
        self.sender = sender
        self.store = store

    def _recipient(self, data: Dict[str, Any]) -> Dict[str, Any]:
        data = dict(data)
        user = self.store.get_user(data["userId"]) if self.store and data.get("userId") else None
        if user:
            data.setdefault("to", user.email)
            data.setdefault("name", user.first_name)
        return data

    def send(self, message: Dict[str, Any]) -> Dict[str, Any]:
        """Send a fully formed `{to, subject, html, text}` message."""
        if not message.get("to"):
            return {"success": False, "error": MISSING_RECIPIENT}
        return self.sender.send(message)

    def send_template(self, name: str, data: Dict[str, Any]) -> Dict[str, Any]:
        template = EMAIL_TEMPLATES.get(name)
        if template is None:
            logger.error("Email template '%s' not found", name)
            return {"success": False, "error": TEMPLATE_NOT_FOUND}
        data = self._recipient(data)
        subject, html = template
        return self.send({
            "to": data.get("to"),
            "subject": Template(subject).render(**data),
            "html": Template(html).render(**data),
        })


class SmsService:
    def __init__(self, sender, store: Optional[MemoryStore] = None):
        self.sender = sender
        self.store = store

    def send(self, phone: Optional[str], message: str) -> Dict[str, Any]:
        if not phone:
            return {"success": False, "error": MISSING_RECIPIENT}
        return self.sender.send(phone, message)

    def send_template(self, name: str, data: Dict[str, Any]) -> Dict[str, Any]:
        template = SMS_TEMPLATES.get(name)
        if template is None:
            logger.error("SMS template '%s' not found", name)
            return {"success": False, "error": TEMPLATE_NOT_FOUND}
        phone = data.get("phone")
        if not phone and self.store and data.get("userId"):
            user = self.store.get_user(data["userId"])
            phone = user.phone if user else None
        return self.send(phone, Template(template).render(**data))


def notification_to_dict(n: Notification) -> Dict[str, Any]:
    return {
        "id": n.id,
        "userId": n.user_id,
        "type": n.type,
        "title": n.title,
        "status": n.status,
        "createdAt": to_iso(n.created_at),
    }


class NotificationService:
    def __init__(self, store: MemoryStore, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self._clock = clock

    def create(self, data: Dict[str, Any]) -> Dict[str, Any]:
        if not data.get("title") or not data.get("message"):
            raise ValueError("Notification title and message are required")
        now = self._clock()
        priority = data.get("priority", "normal")
        n = self.store.add_notification(Notification(
            id=new_id(),
            user_id=data.get("userId"),
            title=data["title"],
            message=data["message"],
            type=data.get("type", "general"),
            priority=priority,
            data=dict(data.get("data") or {}),
            dedupe_key=data.get("dedupeKey"),
            scheduled_for=data.get("scheduledFor"),
            expires_at=data.get("expiresAt") or default_expiry(priority, now),
            created_at=now,
        ))
        return notification_to_dict(n)

    def _event_title(self, event_id: str) -> str:
        event = self.store.get_event(event_id)
        return event.title if event else "your event"

    def event_registration(self, user_id: str, event_id: str) -> Dict[str, Any]:
        return self.create({
            "userId": user_id,
            "type": "event_registration",
            "title": "Registration confirmed",
            "message": f"You are registered for {self._event_title(event_id)}.",
            "data": {"eventId": event_id},
            "dedupeKey": f"registration:{user_id}:{event_id}",
        })

    def event_reminder(self, user_id: str, event_id: str, reminder_type: str = "24h") -> Dict[str, Any]:
        when = "in 1 hour" if reminder_type == "1h" else "tomorrow"
        return self.create({
            "userId": user_id,
            "type": "event_reminder",
            "priority": "high" if reminder_type == "1h" else "normal",
            "title": "Event reminder",
            "message": f"{self._event_title(event_id)} starts {when}.",
            "data": {"eventId": event_id, "reminderType": reminder_type},
            "dedupeKey": f"reminder-{reminder_type}:{user_id}:{event_id}",
        })

    def certificate_ready(self, user_id: str, certificate_id: str) -> Dict[str, Any]:
        return self.create({
            "userId": user_id,
            "type": "certificate_ready",
            "title": "Certificate ready",
            "message": "Your certificate is ready to download.",
            "data": {"certificateId": certificate_id},
            "dedupeKey": f"certificate:{certificate_id}",
        })

    def feedback_request(self, user_id: str, event_id: str) -> Dict[str, Any]:
        return self.create({
            "userId": user_id,
            "type": "feedback_request",
            "title": "Share your feedback",
            "message": f"How was {self._event_title(event_id)}?",
            "data": {"eventId": event_id},
            "dedupeKey": f"feedback:{user_id}:{event_id}",
        })

    def broadcast(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return self.create(dict(data, userId=None, type=data.get("type", "broadcast")))

    def bulk(self, items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return [self.create(item) for item in items]

    def pending(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        return [notification_to_dict(n) for n in self.store.pending_notifications(now or self._clock())]


def certificate_to_dict(c: Certificate) -> Dict[str, Any]:
    return {
        "id": c.id,
        "userId": c.user_id,
        "eventId": c.event_id,
        "certificateNumber": c.number,
        "filePath": c.file_path,
        "status": c.status,
        "issuedAt": to_iso(c.issued_at),
    }


class CertificateService:
    def __init__(self, store: MemoryStore, codec: QRCodec,
                 renderer: Optional[CertificateRenderer] = None,
                 output_dir: Optional[str] = None, frontend_url: Optional[str] = None):
        self.store = store
        self.codec = codec
        self.renderer = renderer or CertificateRenderer()
        self.output_dir = output_dir or CERTIFICATE_DIR
        self.frontend_url = (frontend_url or FRONTEND_URL).rstrip("/")

    def get(self, certificate_id: str) -> Certificate:
        cert = self.store.get_certificate(certificate_id)
        if cert is None:
            raise LookupError(f"Certificate {certificate_id} not found")
        return cert

    def generate(self, user_id: str, event_id: str, template_id: Optional[str] = None) -> Certificate:
        existing = self.store.find_certificate(user_id, event_id)
        if existing:
            logger.info("Certificate already exists for user %s and event %s", user_id, event_id)
            return existing

        cert = self._render(user_id, event_id, template_id)
        stored = self.store.add_certificate(cert)
        if stored is not cert:
            # Lost a race with another delivery of the same job.
            self.delete_file(cert.file_path)
        else:
            logger.info("Certificate %s generated for user %s", cert.number, user_id)
        return stored

    def _render(self, user_id: str, event_id: str, template_id: Optional[str]) -> Certificate:
        """Build a certificate record and write its PDF. Nothing is stored."""
        user = self.store.get_user(user_id)
        event = self.store.get_event(event_id)
        if user is None:
            raise LookupError(f"User {user_id} not found")
        if event is None:
            raise LookupError(f"Event {event_id} not found")
        template = (self.store.get_template(template_id)
                    or self.store.get_template(event.certificate_template_id)
                    or self.store.default_template())
        if template is None:
            raise LookupError("No certificate template found")

        cert = Certificate(
            id=new_id(),
            user_id=user.id,
            event_id=event.id,
            number=self.store.next_certificate_number(),
            template_id=template.id,
        )
        cert.verification_hash = hashlib.sha256(f"{cert.id}:{cert.number}".encode()).hexdigest()[:32]
        signed = self.codec.build_certificate_qr(
            cert.id, cert.number, f"{self.frontend_url}/verify/{cert.verification_hash}"
        )
        pdf = self.renderer.render(template, {
            "recipient_name": user.full_name,
            "event_title": event.title,
            "event_date": f"{event.start_time:%B %d, %Y}",
            "event_venue": event.venue,
            "issued_date": f"{cert.issued_at:%B %d, %Y}",
            "certificate_number": cert.number,
        }, qr_image=self.codec.make_image(signed, width=200))

        os.makedirs(self.output_dir, exist_ok=True)
        cert.file_path = os.path.join(self.output_dir, f"certificate-{cert.number}.pdf")
        with open(cert.file_path, "wb") as fh:
            fh.write(pdf)
        return cert

    def generate_bulk(self, event_id: str, template_id: Optional[str] = None) -> Dict[str, Any]:
        event = self.store.get_event(event_id)
        if event is None:
            raise LookupError(f"Event {event_id} not found")
        if not event.certificate_enabled:
            raise ValueError("Certificates are not enabled for this event")

        attendees = self.store.attendees(event.id)
        results: Dict[str, Any] = {"total": len(attendees), "success": [], "failed": []}
        for user in attendees:
            try:
                cert = self.generate(user.id, event.id, template_id)
                results["success"].append({"userId": user.id, "certificateId": cert.id})
            except Exception as e:
                logger.exception("Certificate generation failed for user %s", user.id)
                results["failed"].append({"userId": user.id, "error": str(e)})
        logger.info(
            "Bulk certificates for event %s: %d success, %d failed",
            event_id, len(results["success"]), len(results["failed"]),
        )
        return results

    def regenerate(self, certificate_id: str, template_id: Optional[str] = None) -> Certificate:
        old = self.get(certificate_id)
        # The old record and file stay until the replacement is on disk.
        cert = self._render(old.user_id, old.event_id, template_id or old.template_id)
        self.store.delete_certificate(old.id)
        stored = self.store.add_certificate(cert)
        if stored is not cert:
            self.delete_file(cert.file_path)
        if old.file_path:
            self.delete_file(old.file_path)
        logger.info("Certificate %s replaced by %s", old.number, cert.number)
        return stored

    def delete_file(self, path: str) -> bool:
        try:
            os.remove(path)
        except FileNotFoundError:
            return False
        logger.info("Deleted certificate file %s", path)
        return True
