import logging
from typing import Any, Dict

from ..jobs import CERTIFICATE, EMAIL, NOTIFICATION, CertificateJob, EmailJob, NotificationJob
from ..models import JobOptions
from ..queues import QueueRegistry
from ..services import CertificateService, certificate_to_dict
from .base import Processor

logger = logging.getLogger(__name__)


class CertificateProcessor(Processor):
    queue = CERTIFICATE

    def __init__(self, registry: QueueRegistry, certificates: CertificateService):
        self.registry = registry
        self.certificates = certificates
        super().__init__()

    def handlers(self):
        return {
            CertificateJob.GENERATE_SINGLE: self.generate_single,
            CertificateJob.GENERATE_BULK: self.generate_bulk,
            CertificateJob.REGENERATE: self.regenerate,
        }

    def generate_single(self, data: Dict[str, Any]) -> Dict[str, Any]:
        cert = self.certificates.generate(data["userId"], data["eventId"], data.get("templateId"))
        event = self.certificates.store.get_event(cert.event_id)

        # Fixed job ids: a redelivered job re-enqueues the same two jobs, which are no-ops.
        self.registry.enqueue(
            NOTIFICATION, NotificationJob.CERTIFICATE_READY,
            {"userId": cert.user_id, "certificateId": cert.id},
            JobOptions(job_id=f"certificate-ready-notification:{cert.id}"),
        )
        self.registry.enqueue(
            EMAIL, EmailJob.CERTIFICATE_READY,
            {
                "userId": cert.user_id,
                "certificateId": cert.id,
                "certificateNumber": cert.number,
                "eventTitle": data.get("eventTitle") or (event.title if event else ""),
            },
            JobOptions(job_id=f"certificate-ready-email:{cert.id}"),
        )
        logger.info("Certificate generated for user %s", cert.user_id)
        return certificate_to_dict(cert)

    def generate_bulk(self, data: Dict[str, Any]) -> Dict[str, Any]:
        return self.certificates.generate_bulk(data["eventId"], data.get("templateId"))

    def regenerate(self, data: Dict[str, Any]) -> Dict[str, Any]:
        cert = self.certificates.regenerate(data["certificateId"], data.get("templateId"))
        logger.info("Certificate regenerated: %s -> %s", data["certificateId"], cert.id)
        return certificate_to_dict(cert)
