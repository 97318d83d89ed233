"""
redis_store.py — Redis-backed authoritative alert store.

Key layout:

    sos:alert:{alert_id}                  JSON alert document
    sos:active:{requester_id}             id of the requester's live alert (SET NX)
    sos:requester:{requester_id}:alerts   set of alert ids
    sos:response:{response_id}            JSON helper-response document
    sos:alert:{alert_id}:responses        set of response ids
    sos:helper:{helper_id}:responses      set of response ids

Change notification (pub/sub, payload is the document id):

    sos:alert:{alert_id}:changes
    sos:responses:{alert_id}:changes

Subscribers re-read the full document on every message, so a listener
always sees a complete snapshot even if it missed intermediate messages.

One live alert per requester is guaranteed by ``SET NX`` on the
``sos:active`` key, which makes concurrent ``create`` calls from two
devices race safely. A claim whose document write fails is released
again before the error surfaces, so the requester can retry. Alert updates
use WATCH/MULTI so a concurrent writer forces a re-read instead of a lost
update.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import replace
from typing import Any, Awaitable, Callable, Dict, List, Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError, WatchError

from backend.app.alerts.models import Alert, HelperResponse, now_ms
from backend.app.alerts.stores.base import (
    AlertCallback,
    ErrorCallback,
    ResponsesCallback,
)
from backend.app.core.errors import (
    DuplicateActiveAlert,
    InvalidTransition,
    NotFoundError,
    TransportError,
)

logger = logging.getLogger(__name__)

MAX_WATCH_RETRIES = 5


def _alert_key(alert_id: str) -> str:
    return f"sos:alert:{alert_id}"


def _active_key(requester_id: str) -> str:
    return f"sos:active:{requester_id}"


def _response_key(response_id: str) -> str:
    return f"sos:response:{response_id}"


def _alert_channel(alert_id: str) -> str:
    return f"sos:alert:{alert_id}:changes"


def _responses_channel(alert_id: str) -> str:
    return f"sos:responses:{alert_id}:changes"


class _PubSubRegistration:
    """Owns one pub/sub connection and the task pumping it."""

    def __init__(self, pubsub, task: "asyncio.Task[None]"):
        self._pubsub = pubsub
        self._task = task
        self.active = True

    def remove(self) -> None:
        if not self.active:
            return
        self.active = False
        self._task.cancel()


class RedisAlertStore:
    """
    Usage:
        store = RedisAlertStore("redis://localhost:6379/0")
        alert = await store.create(alert)
        ...
        await store.close()
    """

    def __init__(self, url: str, *, client: Optional[aioredis.Redis] = None):
        self.url = url
        self._client = client

    def _redis(self) -> aioredis.Redis:
        """Get or create async Redis client."""
        if self._client is None:
            self._client = aioredis.from_url(
                self.url,
                encoding="utf-8",
                decode_responses=True,
            )
            logger.info("Redis alert store connected: %s", self.url)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("Redis alert store closed")

    # ── Alerts ──

    async def create(self, alert: Alert) -> Alert:
        client = self._redis()
        stored = replace(alert, updated_at=alert.updated_at or alert.created_at)
        try:
            claimed = await client.set(_active_key(alert.requester_id), alert.id, nx=True)
            if not claimed:
                existing = await client.get(_active_key(alert.requester_id))
                raise DuplicateActiveAlert(alert.requester_id, existing)

            try:
                async with client.pipeline(transaction=True) as pipe:
                    pipe.set(_alert_key(stored.id), json.dumps(stored.to_dict()))
                    pipe.sadd(f"sos:requester:{stored.requester_id}:alerts", stored.id)
                    await pipe.execute()
            except RedisError:
                await self._abandon_claim(stored)
                raise
        except RedisError as e:
            raise TransportError("alert_store", str(e), alert_id=alert.id) from e

        logger.info(
            "Alert %s created for requester %s",
            stored.id, stored.requester_id,
            extra={"alert_id": stored.id, "requester_id": stored.requester_id},
        )
        return stored

    async def get(self, alert_id: str) -> Optional[Alert]:
        try:
            raw = await self._redis().get(_alert_key(alert_id))
        except RedisError as e:
            raise TransportError("alert_store", str(e), alert_id=alert_id) from e
        return Alert.from_dict(json.loads(raw)) if raw else None

    async def update(self, alert_id: str, patch: Dict[str, Any]) -> Alert:
        client = self._redis()
        key = _alert_key(alert_id)
        try:
            for _ in range(MAX_WATCH_RETRIES):
                async with client.pipeline(transaction=True) as pipe:
                    try:
                        await pipe.watch(key)
                        raw = await pipe.get(key)
                        if raw is None:
                            raise NotFoundError("Alert", alert_id=alert_id)
                        current = Alert.from_dict(json.loads(raw))
                        if current.is_terminal:
                            target = patch.get("status", current.status)
                            raise InvalidTransition(
                                current.status.value, target.value, actor="authority",
                            )

                        stamp = max(now_ms(), (current.updated_at or 0) + 1)
                        updated = replace(current, **patch, updated_at=stamp)
                        if updated.is_terminal and updated.resolved_at is None:
                            updated = replace(updated, resolved_at=stamp)

                        pipe.multi()
                        pipe.set(key, json.dumps(updated.to_dict()))
                        await pipe.execute()
                    except WatchError:
                        continue

                if updated.is_terminal:
                    await self._release_active(updated)
                await client.publish(_alert_channel(alert_id), alert_id)
                return updated
        except RedisError as e:
            raise TransportError("alert_store", str(e), alert_id=alert_id) from e

        raise TransportError("alert_store", "too many concurrent writers", alert_id=alert_id)

    async def _release_active(self, alert: Alert) -> None:
        key = _active_key(alert.requester_id)
        if await self._redis().get(key) == alert.id:
            await self._redis().delete(key)

    async def _abandon_claim(self, alert: Alert) -> None:
        """Drop the active-alert claim of a create whose document write failed."""
        try:
            await self._release_active(alert)
        except RedisError as e:
            logger.error(
                "Could not release active claim for %s after failed create: %s",
                alert.requester_id, e,
                extra={"alert_id": alert.id, "requester_id": alert.requester_id},
            )

    async def find_active_for_requester(self, requester_id: str) -> Optional[Alert]:
        try:
            alert_id = await self._redis().get(_active_key(requester_id))
        except RedisError as e:
            raise TransportError("alert_store", str(e), requester_id=requester_id) from e
        if alert_id is None:
            return None
        return await self.get(alert_id)

    async def listen_alert(
        self,
        alert_id: str,
        on_snapshot: AlertCallback,
        on_error: ErrorCallback,
    ) -> _PubSubRegistration:
        async def fetch() -> Optional[Alert]:
            return await self.get(alert_id)

        return await self._listen(_alert_channel(alert_id), fetch, on_snapshot, on_error)

    # ── Responses ──

    async def create_response(self, response: HelperResponse) -> HelperResponse:
        client = self._redis()
        try:
            async with client.pipeline(transaction=True) as pipe:
                pipe.set(_response_key(response.id), json.dumps(response.to_dict()))
                pipe.sadd(f"sos:alert:{response.alert_id}:responses", response.id)
                pipe.sadd(f"sos:helper:{response.helper_id}:responses", response.id)
                await pipe.execute()
            await client.publish(_responses_channel(response.alert_id), response.id)
        except RedisError as e:
            raise TransportError("alert_store", str(e), response_id=response.id) from e
        return response

    async def get_response(self, response_id: str) -> Optional[HelperResponse]:
        try:
            raw = await self._redis().get(_response_key(response_id))
        except RedisError as e:
            raise TransportError("alert_store", str(e), response_id=response_id) from e
        return HelperResponse.from_dict(json.loads(raw)) if raw else None

    async def update_response(self, response_id: str, patch: Dict[str, Any]) -> HelperResponse:
        current = await self.get_response(response_id)
        if current is None:
            raise NotFoundError("HelperResponse", response_id=response_id)
        updated = replace(current, **patch)
        client = self._redis()
        try:
            await client.set(_response_key(response_id), json.dumps(updated.to_dict()))
            await client.publish(_responses_channel(updated.alert_id), response_id)
        except RedisError as e:
            raise TransportError("alert_store", str(e), response_id=response_id) from e
        return updated

    async def list_responses(self, alert_id: str) -> List[HelperResponse]:
        return await self._load_responses(f"sos:alert:{alert_id}:responses")

    async def list_active_responses_for_helper(self, helper_id: str) -> List[HelperResponse]:
        responses = await self._load_responses(f"sos:helper:{helper_id}:responses")
        return [r for r in responses if r.is_active]

    async def listen_responses(
        self,
        alert_id: str,
        on_snapshot: ResponsesCallback,
        on_error: ErrorCallback,
    ) -> _PubSubRegistration:
        async def fetch() -> List[HelperResponse]:
            return await self.list_responses(alert_id)

        return await self._listen(_responses_channel(alert_id), fetch, on_snapshot, on_error)

    # ── Internals ──

    async def _load_responses(self, index_key: str) -> List[HelperResponse]:
        client = self._redis()
        try:
            ids = await client.smembers(index_key)
            if not ids:
                return []
            raws = await client.mget([_response_key(i) for i in ids])
        except RedisError as e:
            raise TransportError("alert_store", str(e), index=index_key) from e
        responses = [HelperResponse.from_dict(json.loads(r)) for r in raws if r]
        responses.sort(key=lambda r: r.responded_at)
        return responses

    async def _listen(
        self,
        channel: str,
        fetch: Callable[[], Awaitable[Any]],
        on_snapshot: Callable[[Any], None],
        on_error: ErrorCallback,
    ) -> _PubSubRegistration:
        pubsub = self._redis().pubsub()
        try:
            # subscribe before the first read so no change falls in between
            await pubsub.subscribe(channel)
            initial = await fetch()
        except (RedisError, TransportError) as e:
            await self._close_pubsub(pubsub, channel)
            if isinstance(e, TransportError):
                raise
            raise TransportError("alert_store", str(e), channel=channel) from e
        if initial is None:
            await self._close_pubsub(pubsub, channel)
            raise NotFoundError("Alert", channel=channel)
        on_snapshot(initial)

        async def pump() -> None:
            try:
                async for message in pubsub.listen():
                    if message.get("type") != "message":
                        continue
                    snapshot = await fetch()
                    if snapshot is not None:
                        on_snapshot(snapshot)
            except (RedisError, TransportError) as e:
                logger.warning("Subscription %s dropped: %s", channel, e)
                on_error(e if isinstance(e, TransportError) else TransportError("alert_store", str(e)))
            finally:
                await self._close_pubsub(pubsub, channel)

        task = asyncio.get_running_loop().create_task(pump())
        return _PubSubRegistration(pubsub, task)

    @staticmethod
    async def _close_pubsub(pubsub, channel: str) -> None:
        try:
            await pubsub.unsubscribe(channel)
        except RedisError as e:
            logger.debug("Unsubscribe from %s failed: %s", channel, e)
        finally:
            await pubsub.aclose()
