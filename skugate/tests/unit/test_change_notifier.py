from __future__ import annotations

import pytest

from skugate.services.notifier import (
    TOPIC_POLICY_CHANGED,
    TOPIC_QUOTA_EXCEEDED,
    ChangeEvent,
    ChangeNotifier,
)
from skugate.services.telemetry import counters_snapshot


class FakeRedis:
    def __init__(self, *, fail: bool = False) -> None:
        self.fail = fail
        self.published: list[tuple[str, str]] = []

    async def publish(self, channel: str, message: str) -> int:
        if self.fail:
            raise ConnectionError("redis down")
        self.published.append((channel, message))
        return 1


def _notifier(redis: FakeRedis | None, *, enabled: bool = True) -> ChangeNotifier:
    async def _factory() -> FakeRedis | None:
        return redis

    return ChangeNotifier(enabled=enabled, redis_factory=_factory, origin="proc-a")  # type: ignore[arg-type]


def test_subscribe_rejects_unknown_topics() -> None:
    notifier = _notifier(None)

    async def handler(event: ChangeEvent) -> None:
        return None

    with pytest.raises(ValueError):
        notifier.subscribe("policy.deleted", handler)


@pytest.mark.asyncio
async def test_publish_dispatches_locally_and_to_redis() -> None:
    redis = FakeRedis()
    notifier = _notifier(redis)
    seen: list[ChangeEvent] = []

    async def handler(event: ChangeEvent) -> None:
        seen.append(event)

    notifier.subscribe(TOPIC_POLICY_CHANGED, handler)
    notifier.subscribe(TOPIC_POLICY_CHANGED, handler)
    await notifier.publish(ChangeEvent(topic=TOPIC_POLICY_CHANGED, scope="tenant", scope_id="acme"))

    assert len(seen) == 1
    assert seen[0].origin == "proc-a"
    assert redis.published[0][0].endswith(":policy.changed")
    assert ChangeEvent.from_json(redis.published[0][1]).scope_id == "acme"


@pytest.mark.asyncio
async def test_failing_handler_does_not_block_others() -> None:
    notifier = _notifier(None, enabled=False)
    seen: list[str] = []

    async def broken(event: ChangeEvent) -> None:
        raise RuntimeError("boom")

    async def working(event: ChangeEvent) -> None:
        seen.append(event.topic)

    notifier.subscribe(TOPIC_QUOTA_EXCEEDED, broken)
    notifier.subscribe(TOPIC_QUOTA_EXCEEDED, working)
    delivered = await notifier.dispatch(ChangeEvent(topic=TOPIC_QUOTA_EXCEEDED, tenant_id="t1"))

    assert delivered == 1
    assert seen == [TOPIC_QUOTA_EXCEEDED]
    assert counters_snapshot()["notify_handler_failures_total"] == 1


@pytest.mark.asyncio
async def test_redis_failures_are_counted_not_raised() -> None:
    notifier = _notifier(FakeRedis(fail=True))
    await notifier.publish(ChangeEvent(topic=TOPIC_POLICY_CHANGED))
    assert counters_snapshot()["notify_publish_failures_total"] == 1


@pytest.mark.asyncio
async def test_disabled_notifier_stays_local() -> None:
    redis = FakeRedis()
    notifier = _notifier(redis, enabled=False)
    await notifier.publish(ChangeEvent(topic=TOPIC_POLICY_CHANGED))
    assert redis.published == []


@pytest.mark.asyncio
async def test_remote_events_skip_own_origin_and_garbage() -> None:
    notifier = _notifier(None)
    seen: list[str] = []

    async def handler(event: ChangeEvent) -> None:
        seen.append(event.origin or "")

    notifier.subscribe(TOPIC_POLICY_CHANGED, handler)
    own = ChangeEvent(topic=TOPIC_POLICY_CHANGED, origin="proc-a").to_json()
    other = ChangeEvent(topic=TOPIC_POLICY_CHANGED, origin="proc-b").to_json()

    assert await notifier.handle_remote(own) is False
    assert await notifier.handle_remote("not json") is False
    assert await notifier.handle_remote('{"scope": "tenant"}') is False
    assert await notifier.handle_remote(other) is True
    assert seen == ["proc-b"]
