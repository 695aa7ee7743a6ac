"""Read-only aggregations over the domain store."""

from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from ..jobs import ANALYTICS, AnalyticsJob
from ..store import ISSUED, REVOKED, MemoryStore
from ..utils import to_iso, utcnow
from .base import Processor


def _rate(part: int, whole: int) -> float:
    return round(part / whole * 100, 2) if whole else 0


def _start_of_day(dt: datetime) -> datetime:
    return dt.replace(hour=0, minute=0, second=0, microsecond=0)


class AnalyticsProcessor(Processor):
    queue = ANALYTICS

    def __init__(self, store: MemoryStore, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self._clock = clock
        super().__init__()

    def handlers(self):
        return {
            AnalyticsJob.EVENT_STATS: self.event_stats,
            AnalyticsJob.USER_STATS: self.user_stats,
            AnalyticsJob.CERTIFICATE_STATS: self.certificate_stats,
            AnalyticsJob.FEEDBACK_STATS: self.feedback_stats,
            AnalyticsJob.DAILY_REPORT: self.daily_report,
            AnalyticsJob.WEEKLY_REPORT: self.weekly_report,
            AnalyticsJob.MONTHLY_REPORT: self.monthly_report,
        }

    def event_stats(self, data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        event = self.store.get_event(data["eventId"])
        if event is None:
            return None
        c = self.store.registration_counts(event.id)
        return {
            "eventId": event.id,
            "totalRegistrations": c["registered"],
            "totalAttendance": c["attended"],
            "attendanceRate": _rate(c["attended"], c["registered"]),
            "certificatesIssued": c["certificates"],
        }

    def user_stats(self, data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        user = self.store.get_user(data["userId"])
        if user is None:
            return None
        regs = list(user.registrations.values())
        return {
            "userId": user.id,
            "totalRegistrations": len(regs),
            "attendedEvents": sum(1 for r in regs if r.attended),
            "certificatesEarned": sum(1 for r in regs if r.certificate_issued),
        }

    def certificate_stats(self, data: Dict[str, Any]) -> Dict[str, Any]:
        total = self.store.count_certificates()
        issued = self.store.count_certificates(ISSUED)
        return {
            "total": total,
            "issued": issued,
            "revoked": self.store.count_certificates(REVOKED),
            "issuedRate": _rate(issued, total),
        }

    def feedback_stats(self, data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        items = self.store.feedback_for(data.get("eventId"))
        if not items:
            return None
        nps_scores = [f.nps_score for f in items if f.nps_score is not None]
        nps = 0
        if nps_scores:
            promoters = sum(1 for s in nps_scores if s >= 9)
            detractors = sum(1 for s in nps_scores if s <= 6)
            nps = round((promoters - detractors) / len(nps_scores) * 100, 2)
        return {
            "totalFeedback": len(items),
            "averageRating": round(sum(f.overall for f in items) / len(items), 2),
            "nps": nps,
            "satisfactionRate": _rate(sum(1 for f in items if f.overall >= 4), len(items)),
        }

    def daily_report(self, data: Dict[str, Any]) -> Dict[str, Any]:
        today = _start_of_day(self._clock())
        tomorrow = today + timedelta(days=1)
        return {
            "date": to_iso(today),
            "newUsers": self.store.count_users(today, tomorrow),
            "newEvents": self.store.count_events(today, tomorrow),
            "newCertificates": self.store.count_certificates(since=today, until=tomorrow),
            "newFeedback": self.store.count_feedback(today, tomorrow),
        }

    def weekly_report(self, data: Dict[str, Any]) -> Dict[str, Any]:
        week_start = _start_of_day(self._clock() - timedelta(days=7))
        return {
            "weekStart": to_iso(week_start),
            "newUsers": self.store.count_users(since=week_start),
            "newEvents": self.store.count_events(since=week_start),
            "activeEvents": self.store.count_active_events(week_start),
            "certificates": self.store.count_certificates(since=week_start),
        }

    def monthly_report(self, data: Dict[str, Any]) -> Dict[str, Any]:
        month_start = _start_of_day(self._clock()).replace(day=1)
        return {
            "month": to_iso(month_start),
            "totals": {
                "users": self.store.count_users(),
                "events": self.store.count_events(),
                "certificates": self.store.count_certificates(),
                "feedback": self.store.count_feedback(),
            },
            "monthly": {
                "users": self.store.count_users(since=month_start),
                "events": self.store.count_events(since=month_start),
                "certificates": self.store.count_certificates(since=month_start),
                "feedback": self.store.count_feedback(since=month_start),
            },
        }
