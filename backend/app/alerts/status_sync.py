"""
status_sync.py — Push subscriptions on alert and response documents.

The stores expose callback listeners; this module turns them into async
iterators with explicit cancellation:

    sub = await observer.subscribe(alert_id)
    async for alert in sub:
        ...
    sub.close()

═══════════════════════════════════════════════════════════════════════════
DELIVERY RULES
═══════════════════════════════════════════════════════════════════════════

    • The current snapshot is delivered first, then one snapshot per
      authoritative change, in store order.
    • Consecutive identical snapshots are suppressed:
          alerts     (status, updated_at)
          responses  [(id, status, arrived_at, completed_at), ...]
    • ``close()`` detaches the store listener at once and discards
      anything still buffered. Idempotent. ``finish()`` instead ends the
      stream after what is already buffered.
    • A store error is raised from the iterator once as TransportError;
      the subscription is closed afterwards. Nothing is retried here.
    • The buffer is bounded. When a slow consumer lets it fill up, the
      oldest snapshot is dropped: every snapshot is a full document, so
      the newest one supersedes it.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Generic, List, Optional, Tuple, TypeVar

from backend.app.alerts.models import Alert, HelperResponse
from backend.app.alerts.stores.base import AlertStore, ListenerRegistration
from backend.app.core.config import settings
from backend.app.core.errors import TransportError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_CLOSED = object()


class _Failure:
    __slots__ = ("error",)

    def __init__(self, error: Exception):
        self.error = error


class Subscription(Generic[T]):
    """Bounded async iterator fed by a push source."""

    def __init__(self, *, maxsize: Optional[int] = None, name: str = ""):
        self.name = name
        self._queue: "asyncio.Queue[Any]" = asyncio.Queue(
            maxsize or settings.SUBSCRIPTION_BUFFER_SIZE
        )
        self._registration: Optional[ListenerRegistration] = None
        self._closed = False
        self._finished = False

    @property
    def closed(self) -> bool:
        return self._closed

    def attach(self, registration: ListenerRegistration) -> None:
        """Bind the store listener released by ``close()``."""
        if self._closed:
            registration.remove()
            return
        self._registration = registration

    def publish(self, item: T) -> None:
        if self._closed or self._finished:
            return
        self._put(item)

    def fail(self, error: Exception) -> None:
        """Deliver ``error`` as the terminal item; the store listener is dead."""
        if self._closed or self._finished:
            return
        self._finished = True
        self._release()
        self._put(_Failure(error))

    def finish(self) -> None:
        """End the stream after the items already buffered."""
        if self._closed or self._finished:
            return
        self._finished = True
        self._release()
        self._put(_CLOSED)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._release()
        while not self._queue.empty():
            self._queue.get_nowait()
        # wake a consumer blocked in __anext__
        self._queue.put_nowait(_CLOSED)

    def _release(self) -> None:
        registration, self._registration = self._registration, None
        if registration is not None:
            registration.remove()

    def _put(self, item: Any) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            logger.warning("Subscription %s buffer full, dropped oldest item", self.name)
        self._queue.put_nowait(item)

    def __aiter__(self) -> "Subscription[T]":
        return self

    async def __anext__(self) -> T:
        if self._closed:
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is _CLOSED or self._closed:
            self._closed = True
            raise StopAsyncIteration
        if isinstance(item, _Failure):
            self.close()
            raise item.error
        return item


def _as_transport_error(exc: Exception) -> TransportError:
    if isinstance(exc, TransportError):
        return exc
    return TransportError("alert_store", str(exc) or type(exc).__name__)


def _responses_fingerprint(responses: List[HelperResponse]) -> Tuple[Tuple[Any, ...], ...]:
    return tuple(
        (r.id, r.status, r.arrived_at, r.completed_at) for r in responses
    )


class StatusSyncObserver:
    """Opens de-duplicated subscriptions against an AlertStore."""

    def __init__(self, alert_store: AlertStore, *, buffer_size: Optional[int] = None):
        self.alert_store = alert_store
        self.buffer_size = buffer_size or settings.SUBSCRIPTION_BUFFER_SIZE

    async def subscribe(self, alert_id: str) -> Subscription[Alert]:
        """
        Stream of authoritative snapshots of one alert.

        Raises TransportError (or NotFoundError) if the listener cannot be
        set up at all.
        """
        sub: Subscription[Alert] = Subscription(
            maxsize=self.buffer_size, name=f"alert:{alert_id}",
        )
        last_key: List[Optional[Tuple[Any, Any]]] = [None]

        def on_snapshot(alert: Alert) -> None:
            key = (alert.status, alert.updated_at)
            if key == last_key[0]:
                logger.debug("Duplicate snapshot suppressed for %s", alert_id)
                return
            last_key[0] = key
            sub.publish(alert)

        def on_error(exc: Exception) -> None:
            logger.warning(
                "Alert subscription %s failed: %s", alert_id, exc,
                extra={"alert_id": alert_id},
            )
            sub.fail(_as_transport_error(exc))

        registration = await self.alert_store.listen_alert(alert_id, on_snapshot, on_error)
        sub.attach(registration)
        return sub

    async def subscribe_responses(self, alert_id: str) -> Subscription[List[HelperResponse]]:
        """Stream of the full helper-response list of one alert."""
        sub: Subscription[List[HelperResponse]] = Subscription(
            maxsize=self.buffer_size, name=f"responses:{alert_id}",
        )
        last_key: List[Optional[Tuple[Any, ...]]] = [None]

        def on_snapshot(responses: List[HelperResponse]) -> None:
            key = _responses_fingerprint(responses)
            if key == last_key[0]:
                return
            last_key[0] = key
            sub.publish(list(responses))

        def on_error(exc: Exception) -> None:
            logger.warning(
                "Response subscription %s failed: %s", alert_id, exc,
                extra={"alert_id": alert_id},
            )
            sub.fail(_as_transport_error(exc))

        registration = await self.alert_store.listen_responses(alert_id, on_snapshot, on_error)
        sub.attach(registration)
        return sub
