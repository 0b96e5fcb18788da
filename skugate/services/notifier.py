from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
import json
import logging
import uuid
from typing import Any, Awaitable, Callable

from redis.asyncio import Redis

from skugate.core.config import get_settings
from skugate.services.resilience import get_shared_redis
from skugate.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

TOPIC_POLICY_CHANGED = "policy.changed"
TOPIC_QUOTA_EXCEEDED = "quota.exceeded"
TOPIC_QUOTA_CEILING_CHANGED = "quota.ceiling_changed"
TOPICS = (TOPIC_POLICY_CHANGED, TOPIC_QUOTA_EXCEEDED, TOPIC_QUOTA_CEILING_CHANGED)


@dataclass(frozen=True)
class ChangeEvent:
    topic: str
    scope: str | None = None
    scope_id: str | None = None
    tenant_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    origin: str | None = None
    occurred_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_json(self) -> str:
        return json.dumps(asdict(self), separators=(",", ":"), default=str)

    @classmethod
    def from_json(cls, raw: str | bytes) -> "ChangeEvent":
        data = json.loads(raw)
        return cls(
            topic=data["topic"],
            scope=data.get("scope"),
            scope_id=data.get("scope_id"),
            tenant_id=data.get("tenant_id"),
            payload=data.get("payload") or {},
            origin=data.get("origin"),
            occurred_at=data.get("occurred_at") or datetime.now(timezone.utc).isoformat(),
            event_id=data.get("event_id") or uuid.uuid4().hex,
        )


Handler = Callable[[ChangeEvent], Awaitable[None]]


class ChangeNotifier:
    """Fan change events out to local subscribers and, best effort, to other processes.

    Publishing happens after the originating transaction commits, so delivery
    failures are logged and counted but never raised back into the write path.
    """

    def __init__(
        self,
        *,
        enabled: bool | None = None,
        redis_factory: Callable[[], Awaitable[Redis | None]] | None = None,
        origin: str | None = None,
    ) -> None:
        settings = get_settings()
        self._enabled = settings.notify_enabled if enabled is None else enabled
        self._prefix = settings.notify_redis_prefix
        self._redis_factory = redis_factory or get_shared_redis
        self._handlers: dict[str, list[Handler]] = defaultdict(list)
        self.origin = origin or uuid.uuid4().hex

    def channel(self, topic: str) -> str:
        return f"{self._prefix}:{topic}"

    def subscribe(self, topic: str, handler: Handler) -> None:
        if topic not in TOPICS:
            raise ValueError(f"unknown topic {topic}")
        if handler not in self._handlers[topic]:
            self._handlers[topic].append(handler)

    def unsubscribe(self, topic: str, handler: Handler) -> None:
        handlers = self._handlers.get(topic, [])
        if handler in handlers:
            handlers.remove(handler)

    async def dispatch(self, event: ChangeEvent) -> int:
        # One failing subscriber must not starve the others.
        delivered = 0
        for handler in list(self._handlers.get(event.topic, [])):
            try:
                await handler(event)
                delivered += 1
            except Exception as exc:  # noqa: BLE001 - subscriber failures are isolated
                increment_counter("notify_handler_failures_total")
                logger.warning(
                    "change_handler_failed topic=%s handler=%s",
                    event.topic,
                    getattr(handler, "__name__", repr(handler)),
                    exc_info=exc,
                )
        return delivered

    async def publish(self, event: ChangeEvent) -> None:
        if event.origin is None:
            event = ChangeEvent(**{**asdict(event), "origin": self.origin})
        increment_counter(f"notify_published_total.{event.topic}")
        await self.dispatch(event)
        if not self._enabled:
            return
        try:
            redis = await self._redis_factory()
            if redis is None:
                return
            await redis.publish(self.channel(event.topic), event.to_json())
        except Exception as exc:  # noqa: BLE001 - other processes catch up via the sweep
            increment_counter("notify_publish_failures_total")
            logger.warning("change_publish_failed topic=%s", event.topic, exc_info=exc)

    async def handle_remote(self, raw: str | bytes) -> bool:
        # Events this process published were already dispatched locally.
        try:
            event = ChangeEvent.from_json(raw)
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("change_event_malformed", exc_info=exc)
            return False
        if event.origin == self.origin:
            return False
        await self.dispatch(event)
        return True

    async def listen(self, *, poll_timeout_s: float = 1.0) -> None:
        # Long-running task; cancel it to stop. Reconnects after Redis errors.
        if not self._enabled:
            return
        channels = [self.channel(topic) for topic in TOPICS]
        while True:
            redis = await self._redis_factory()
            if redis is None:
                await asyncio.sleep(5)
                continue
            pubsub = redis.pubsub()
            try:
                await pubsub.subscribe(*channels)
                logger.info("change_listener_subscribed channels=%s", ",".join(channels))
                while True:
                    message = await pubsub.get_message(
                        ignore_subscribe_messages=True, timeout=poll_timeout_s
                    )
                    if message and message.get("type") == "message":
                        await self.handle_remote(message["data"])
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001 - keep listening across Redis restarts
                logger.warning("change_listener_failed", exc_info=exc)
                await asyncio.sleep(1)
            finally:
                await pubsub.aclose()


_notifier: ChangeNotifier | None = None


def get_notifier() -> ChangeNotifier:
    global _notifier
    if _notifier is None:
        # Imported here: the default handlers depend on services that publish through this module.
        from skugate.services.change_handlers import register_default_handlers

        _notifier = ChangeNotifier()
        register_default_handlers(_notifier)
    return _notifier


def reset_notifier() -> None:
    global _notifier
    _notifier = None
