"""
fanout.py — Concurrent SMS fan-out of an SOS alert to emergency contacts.

═══════════════════════════════════════════════════════════════════════════
DISPATCH FLOW
═══════════════════════════════════════════════════════════════════════════

    ┌─────────────────────┐
    │  1. Build message   │  requester, type, note, map link, signature
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  2. Segment         │  ≤160 chars → send
    │                     │  >160 chars → split_message + send_multipart
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  3. Send to each    │  one task per recipient, at most
    │     recipient       │  FANOUT_MAX_CONCURRENCY in flight
    └─────────┬───────────┘
              │
              ▼
    ┌─────────────────────┐
    │  4. Barrier         │  FanoutResult only once every recipient
    │                     │  has succeeded or failed
    └─────────────────────┘

═══════════════════════════════════════════════════════════════════════════
FAILURE POLICY
═══════════════════════════════════════════════════════════════════════════

    • Continue-on-error: one recipient's TransportError never touches
      the others.
    • Multipart: a single failed segment fails the whole recipient.
    • No phone number: failed with reason "no phone number", no send.
    • No retry here. A resend is a new dispatch decided by the caller,
      so a contact never receives the same SOS twice by accident.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, Iterable, List, Optional, Tuple

from backend.app.alerts.channels.sms_gateway import (
    SMS_SINGLE_SEGMENT_LIMIT,
    SmsTransport,
    split_message,
)
from backend.app.alerts.models import (
    Alert,
    EmergencyContact,
    FanoutFailure,
    FanoutResult,
    Location,
    now_ms,
)
from backend.app.core.config import settings
from backend.app.core.errors import TransportError

logger = logging.getLogger(__name__)

NO_PHONE_REASON = "no phone number"

_TYPE_LABELS = {
    "medical": "MEDICAL",
    "emergency": "EMERGENCY",
    "accident": "ACCIDENT",
    "other": "OTHER",
}


# ═══════════════════════════════════════════════════════════════════════════
# Message Builder
# ═══════════════════════════════════════════════════════════════════════════

def location_url(location: Location) -> str:
    """Map link built from raw coordinates (no geocoding)."""
    return settings.LOCATION_URL_TEMPLATE.format(
        lat=location.latitude, lon=location.longitude,
    )


def build_sos_message(alert: Alert, *, app_name: Optional[str] = None) -> str:
    """
    Render the SOS text sent to every contact.

    Example:
        SOS ALERT!
        Priya Sharma needs help!
        Type: MEDICAL
        Msg: Chest pain, near gate 2
        Location: https://maps.google.com/?q=28.6139,77.209
        - Sent via SafeGuard SOS
    """
    lines = [
        "SOS ALERT!",
        f"{alert.requester_name or alert.requester_phone} needs help!",
        f"Type: {_TYPE_LABELS.get(alert.alert_type.value, 'EMERGENCY')}",
    ]
    if alert.message and alert.message.strip():
        lines.append(f"Msg: {alert.message.strip()}")
    lines.append(f"Location: {location_url(alert.location)}")
    lines.append(f"- Sent via {app_name or settings.APP_NAME}")
    return "\n".join(lines)


def select_sms_recipients(contacts: Iterable[EmergencyContact]) -> List[EmergencyContact]:
    """Contacts that opted into SMS, primary contact first."""
    selected = [c for c in contacts if c.notify_by_sms]
    # stable sort keeps store order among non-primary contacts
    selected.sort(key=lambda c: not c.is_primary)
    return selected


# ═══════════════════════════════════════════════════════════════════════════
# Dispatcher
# ═══════════════════════════════════════════════════════════════════════════

class NotificationFanoutDispatcher:
    """
    Sends one alert to many recipients concurrently.

    Usage:
        dispatcher = NotificationFanoutDispatcher(transport, max_concurrency=8)
        result = await dispatcher.dispatch(alert, contacts)
        if result.partial_failure():
            ...
    """

    def __init__(self, transport: SmsTransport, *, max_concurrency: Optional[int] = None):
        self.transport = transport
        limit = max_concurrency or settings.FANOUT_MAX_CONCURRENCY
        if limit < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {limit}")
        self.max_concurrency = limit
        self._results: Dict[str, FanoutResult] = {}

    def get_fanout_result(self, alert_id: str) -> Optional[FanoutResult]:
        """Latest completed fan-out for ``alert_id``, if any."""
        return self._results.get(alert_id)

    async def dispatch(
        self,
        alert: Alert,
        recipients: List[EmergencyContact],
    ) -> FanoutResult:
        """
        Notify every recipient and return once all of them have an outcome.

        Parameters
        ----------
        alert : Alert
            Alert being announced.
        recipients : list of EmergencyContact
            Contacts to notify; order does not imply send order.

        Returns
        -------
        FanoutResult
            ``attempted == succeeded + len(failed)``.
        """
        started = now_ms()
        text = build_sos_message(alert)
        semaphore = asyncio.Semaphore(self.max_concurrency)

        logger.info(
            "Fan-out for alert %s to %d recipients (%d chars)",
            alert.id, len(recipients), len(text),
            extra={"alert_id": alert.id, "recipient_count": len(recipients)},
        )

        async def _bounded(contact: EmergencyContact) -> Tuple[EmergencyContact, Optional[str]]:
            async with semaphore:
                return contact, await self._deliver(contact, text)

        outcomes = await asyncio.gather(*(_bounded(c) for c in recipients))

        failures = [FanoutFailure(c, reason) for c, reason in outcomes if reason is not None]
        result = FanoutResult(
            alert_id=alert.id,
            attempted=len(recipients),
            succeeded=len(recipients) - len(failures),
            failed=failures,
            started_at=started,
            completed_at=now_ms(),
        )
        self._results[alert.id] = result

        level = logging.WARNING if failures else logging.INFO
        logger.log(
            level,
            "Fan-out for alert %s complete: %d/%d delivered, %dms",
            alert.id, result.succeeded, result.attempted,
            result.completed_at - started,
            extra={
                "alert_id": alert.id,
                "recipient_count": result.attempted,
                "duration_ms": result.completed_at - started,
            },
        )
        return result

    async def _deliver(self, contact: EmergencyContact, text: str) -> Optional[str]:
        """Send to one contact. Returns the failure reason, or None on success."""
        if not contact.phone or not contact.phone.strip():
            return NO_PHONE_REASON

        try:
            if len(text) <= SMS_SINGLE_SEGMENT_LIMIT:
                await self.transport.send(contact.phone, text)
                return None

            parts = split_message(text)
            segments = await self.transport.send_multipart(contact.phone, parts)
        except TransportError as exc:
            logger.warning("SMS to %s failed: %s", contact.phone, exc.message)
            return exc.message
        except Exception as exc:
            logger.exception("SMS to %s raised unexpectedly", contact.phone)
            return f"{type(exc).__name__}: {exc}"

        failed = [s for s in segments if not s.ok]
        if len(segments) < len(parts) or failed:
            reason = (
                f"{len(failed) or len(parts) - len(segments)} of "
                f"{len(parts)} segments failed"
            )
            logger.warning("Multipart SMS to %s failed: %s", contact.phone, reason)
            return reason
        return None
