"""
sms_gateway.py — SMS transport used by the SOS fan-out.

Delivery mechanism:
    • Simulation: log + record (development and tests)
    • HTTP: provider-agnostic POST to an SMS gateway via httpx
    • Payload: ≤160 chars single segment, 153-char segments otherwise

═══════════════════════════════════════════════════════════════════════════
SEGMENTATION
═══════════════════════════════════════════════════════════════════════════

    len(text) ≤ 160   →  one segment, ``send``
    len(text) > 160   →  ceil(len / 153) segments, ``send_multipart``

Concatenated SMS spends 7 characters of every segment on the user data
header, hence 153 rather than 160.

A multipart send reports one SegmentResult per part. Whether a recipient
counts as notified is decided by the caller (the fan-out treats any
failed segment as a failed recipient).

═══════════════════════════════════════════════════════════════════════════
GATEWAY ARCHITECTURE
═══════════════════════════════════════════════════════════════════════════

    Fan-out  →  HTTP POST {to, from, text}  →  SMS Gateway  →  Carrier

    Non-2xx responses and network errors surface as TransportError.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Protocol, Set

import httpx

from backend.app.core.config import Settings
from backend.app.core.errors import TransportError

logger = logging.getLogger(__name__)

SMS_SINGLE_SEGMENT_LIMIT = 160
SMS_MULTIPART_SEGMENT_LIMIT = 153


def split_message(text: str) -> List[str]:
    """
    Split ``text`` into transport segments.

    >>> len(split_message("x" * 160)), len(split_message("x" * 161))
    (1, 2)
    """
    if len(text) <= SMS_SINGLE_SEGMENT_LIMIT:
        return [text]
    step = SMS_MULTIPART_SEGMENT_LIMIT
    return [text[i:i + step] for i in range(0, len(text), step)]


@dataclass
class SegmentResult:
    """Outcome of one segment of a multipart send."""
    index: int
    ok: bool
    error: Optional[str] = None


class SmsTransport(Protocol):
    async def send(self, phone: str, text: str) -> None:
        """Send one segment; raise TransportError on failure."""

    async def send_multipart(self, phone: str, parts: List[str]) -> List[SegmentResult]:
        """Send every part; raise TransportError if nothing could be attempted."""


# ═══════════════════════════════════════════════════════════════════════════
# Simulation
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class SentMessage:
    phone: str
    text: str


class SimulatedSmsTransport:
    """
    In-process transport that logs instead of sending.

    ``fail_numbers`` always fail; ``fail_segments`` fails only the given
    segment indexes of multipart sends. ``delay_seconds`` simulates network
    latency per segment.
    """

    def __init__(
        self,
        *,
        fail_numbers: Iterable[str] = (),
        fail_segments: Iterable[int] = (),
        delay_seconds: float = 0.0,
    ):
        self.fail_numbers: Set[str] = set(fail_numbers)
        self.fail_segments: Set[int] = set(fail_segments)
        self.delay_seconds = delay_seconds
        self.sent: List[SentMessage] = []

    async def send(self, phone: str, text: str) -> None:
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if phone in self.fail_numbers:
            raise TransportError("sms", "simulated failure", phone=phone)
        self.sent.append(SentMessage(phone, text))
        logger.info(
            "[SMS] → %s: %d chars → '%s'",
            phone, len(text), text[:60] + ("..." if len(text) > 60 else ""),
        )

    async def send_multipart(self, phone: str, parts: List[str]) -> List[SegmentResult]:
        if phone in self.fail_numbers:
            raise TransportError("sms", "simulated failure", phone=phone)
        results: List[SegmentResult] = []
        for index, part in enumerate(parts):
            if self.delay_seconds:
                await asyncio.sleep(self.delay_seconds)
            if index in self.fail_segments:
                results.append(SegmentResult(index, False, "simulated segment failure"))
                continue
            self.sent.append(SentMessage(phone, part))
            results.append(SegmentResult(index, True))
        logger.info("[SMS] → %s: multipart, %d segments", phone, len(parts))
        return results


# ═══════════════════════════════════════════════════════════════════════════
# HTTP gateway
# ═══════════════════════════════════════════════════════════════════════════

class HttpSmsGateway:
    """
    Provider-agnostic HTTP SMS gateway.

    POSTs ``{"to", "from", "text"}`` as JSON with a bearer API key. The
    client is created lazily and must be closed with ``close()``.
    """

    def __init__(
        self,
        url: str,
        *,
        api_key: Optional[str] = None,
        sender_id: str = "SAFEGD",
        timeout_seconds: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = url
        self.api_key = api_key
        self.sender_id = sender_id
        self.timeout_seconds = timeout_seconds
        self._http_client = client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None or self._http_client.is_closed:
            self._http_client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._http_client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()

    async def send(self, phone: str, text: str) -> None:
        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        body = {"to": phone, "from": self.sender_id, "text": text}

        try:
            client = await self._get_client()
            response = await client.post(self.url, json=body, headers=headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise TransportError(
                "sms", f"gateway returned {e.response.status_code}",
                phone=phone, status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise TransportError("sms", str(e) or type(e).__name__, phone=phone) from e

        logger.debug("[SMS/HTTP] → %s: %d chars", phone, len(text))

    async def send_multipart(self, phone: str, parts: List[str]) -> List[SegmentResult]:
        results: List[SegmentResult] = []
        for index, part in enumerate(parts):
            try:
                await self.send(phone, part)
                results.append(SegmentResult(index, True))
            except TransportError as e:
                results.append(SegmentResult(index, False, e.message))
        return results


def build_sms_transport(settings: Settings) -> SmsTransport:
    """Select the SMS transport named by ``SMS_PROVIDER``."""
    provider = settings.SMS_PROVIDER.lower()
    if provider == "simulation":
        return SimulatedSmsTransport()
    if provider == "http":
        return HttpSmsGateway(
            settings.SMS_GATEWAY_URL,
            api_key=settings.SMS_API_KEY,
            sender_id=settings.SMS_SENDER_ID,
            timeout_seconds=settings.SMS_TIMEOUT_SECONDS,
        )
    raise ValueError(f"Unknown SMS provider: {settings.SMS_PROVIDER}")
