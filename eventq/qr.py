"""
Signed QR codes for event check-in, attendee tickets and certificates.

Every code carries a JSON envelope `{type, ..., timestamp}` signed with
HMAC-SHA256. The scanned content is `{"payload": <envelope>, "signature": <hex>}`.
Verification returns a `ScanResult` with a typed error instead of raising, so
the scan endpoint can tell a tampered code from an expired or unreadable one.
"""

import base64
import io
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Union

import qrcode
from PIL import Image

from . import signing
from .config import QR_MAX_AGE_SECONDS, QR_SIGNATURE_KEY
from .utils import epoch_ms, to_iso, utcnow

logger = logging.getLogger(__name__)

EVENT = "event"
TICKET = "ticket"
CERTIFICATE = "certificate"
QR_TYPES = (EVENT, TICKET, CERTIFICATE)

MALFORMED = "malformed"
BAD_SIGNATURE = "bad_signature"
EXPIRED = "expired"

ERROR_MESSAGES = {
    MALFORMED: "Invalid QR code format",
    BAD_SIGNATURE: "QR code signature is invalid. Possible tampering detected.",
    EXPIRED: "QR code has expired",
}


@dataclass(frozen=True)
class SignedPayload:
    payload: str
    signature: str
    envelope: Dict[str, Any] = field(default_factory=dict)

    def content(self) -> str:
        """The string that is encoded into the QR image."""
        return json.dumps({"payload": self.payload, "signature": self.signature})


@dataclass(frozen=True)
class ScanResult:
    valid: bool
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    @property
    def message(self) -> Optional[str]:
        return ERROR_MESSAGES.get(self.error) if self.error else None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"valid": self.valid}
        if self.data is not None:
            out["data"] = self.data
        if self.error:
            out["error"] = self.error
            out["message"] = self.message
        return out


def _iso(value: Union[datetime, str]) -> str:
    return to_iso(value) if isinstance(value, datetime) else str(value)


class QRCodec:
    def __init__(self, key: Optional[str] = None,
                 max_age: timedelta = timedelta(seconds=QR_MAX_AGE_SECONDS),
                 clock: Callable[[], datetime] = utcnow):
        self._key = key or QR_SIGNATURE_KEY
        self.max_age = max_age
        self._clock = clock

    # ---------- building ----------
    def sign_envelope(self, envelope: Dict[str, Any]) -> SignedPayload:
        envelope = dict(envelope)
        envelope.setdefault("timestamp", epoch_ms(self._clock()))
        payload = json.dumps(envelope, separators=(",", ":"))
        return SignedPayload(payload, signing.sign(payload, self._key), envelope)

    def build_event_qr(self, event_id: str, title: str, start_time, venue: str) -> SignedPayload:
        return self.sign_envelope({
            "type": EVENT,
            "eventId": str(event_id),
            "title": title,
            "date": _iso(start_time),
            "venue": venue,
        })

    def build_ticket_qr(self, user_id: str, event_id: str, user_name: str, user_email: str,
                        event_title: str, event_date) -> SignedPayload:
        return self.sign_envelope({
            "type": TICKET,
            "userId": str(user_id),
            "eventId": str(event_id),
            "userName": user_name,
            "userEmail": user_email,
            "eventTitle": event_title,
            "eventDate": _iso(event_date),
        })

    def build_certificate_qr(self, certificate_id: str, certificate_number: str,
                             verification_url: str) -> SignedPayload:
        return self.sign_envelope({
            "type": CERTIFICATE,
            "certificateId": str(certificate_id),
            "certificateNumber": certificate_number,
            "verificationUrl": verification_url,
        })

    # ---------- rendering ----------
    def make_image(self, signed: SignedPayload, width: int = 300, margin: int = 2) -> Image.Image:
        qr = qrcode.QRCode(
            error_correction=qrcode.constants.ERROR_CORRECT_H,
            box_size=10,
            border=margin,
        )
        qr.add_data(signed.content())
        qr.make(fit=True)
        img = qr.make_image(fill_color="black", back_color="white").get_image().convert("RGB")
        if width and img.size[0] != width:
            img = img.resize((width, width), Image.NEAREST)
        return img

    def encode_image(self, signed: SignedPayload, width: int = 300, margin: int = 2,
                     as_data_url: bool = True) -> Union[str, bytes]:
        buffer = io.BytesIO()
        self.make_image(signed, width=width, margin=margin).save(buffer, format="PNG")
        png = buffer.getvalue()
        if not as_data_url:
            return png
        return "data:image/png;base64," + base64.b64encode(png).decode("ascii")

    def save_image(self, signed: SignedPayload, path: str, width: int = 300) -> str:
        self.make_image(signed, width=width).save(path, format="PNG")
        logger.info("QR code generated: %s", path)
        return path

    # ---------- verification ----------
    def verify_scanned(self, content) -> ScanResult:
        if isinstance(content, bytes):
            try:
                content = content.decode("utf-8")
            except UnicodeDecodeError:
                return ScanResult(False, error=MALFORMED)
        if not isinstance(content, str):
            return ScanResult(False, error=MALFORMED)
        try:
            outer = json.loads(content)
        except ValueError:
            return ScanResult(False, error=MALFORMED)
        if not isinstance(outer, dict):
            return ScanResult(False, error=MALFORMED)
        return self.verify_signed(outer.get("payload"), outer.get("signature"))

    def verify_signed(self, payload, signature) -> ScanResult:
        if not payload or not signature or not isinstance(payload, str):
            return ScanResult(False, error=MALFORMED)

        if not signing.verify(payload, signature, self._key):
            logger.warning("QR code signature verification failed")
            return ScanResult(False, error=BAD_SIGNATURE)

        try:
            envelope = json.loads(payload)
        except ValueError:
            return ScanResult(False, error=MALFORMED)
        if not isinstance(envelope, dict) or envelope.get("type") not in QR_TYPES:
            return ScanResult(False, error=MALFORMED)
        timestamp = envelope.get("timestamp")
        if isinstance(timestamp, bool) or not isinstance(timestamp, int):
            return ScanResult(False, error=MALFORMED)

        age_ms = epoch_ms(self._clock()) - timestamp
        if age_ms > self.max_age.total_seconds() * 1000:
            return ScanResult(False, data=envelope, error=EXPIRED)
        return ScanResult(True, data=envelope)
