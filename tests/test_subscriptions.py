"""Tests for SubscriptionRegistry."""

import pytest

from agent_courier.models import ResponseEvent
from agent_courier.subscriptions import SubscriptionRegistry


def callback(message_id=1, index=0):
    return ResponseEvent(kind="callback", chat_id="1", message_id=message_id, option_index=index)


def always(_event):
    return True


@pytest.mark.asyncio
async def test_dispatch_in_registration_order():
    registry = SubscriptionRegistry()
    seen = []

    async def first(event):
        seen.append("first")

    async def second(event):
        seen.append("second")

    registry.add(always, first)
    registry.add(always, second)

    assert await registry.dispatch(callback()) == 2
    assert seen == ["first", "second"]


@pytest.mark.asyncio
async def test_predicate_filters_events():
    registry = SubscriptionRegistry()
    seen = []

    async def handler(event):
        seen.append(event.message_id)

    registry.add(lambda e: e.message_id == 7, handler)

    assert await registry.dispatch(callback(message_id=8)) == 0
    assert await registry.dispatch(callback(message_id=7)) == 1
    assert seen == [7]


@pytest.mark.asyncio
async def test_subscription_removed_mid_dispatch_is_skipped():
    registry = SubscriptionRegistry()
    seen = []
    holder = {}

    async def remover(event):
        seen.append("remover")
        registry.remove(holder["victim"])

    async def victim(event):
        seen.append("victim")

    registry.add(always, remover)
    holder["victim"] = registry.add(always, victim)

    await registry.dispatch(callback())
    assert seen == ["remover"]
    assert len(registry) == 1


@pytest.mark.asyncio
async def test_handler_error_does_not_stop_delivery():
    registry = SubscriptionRegistry()
    seen = []

    async def broken(event):
        raise RuntimeError("boom")

    async def healthy(event):
        seen.append(event.option_index)

    registry.add(always, broken)
    registry.add(always, healthy)

    await registry.dispatch(callback(index=3))
    assert seen == [3]


@pytest.mark.asyncio
async def test_remove_reports_whether_registered():
    registry = SubscriptionRegistry()

    async def handler(event):
        pass

    sub = registry.add(always, handler, label="response:1")
    assert sub in registry

    assert registry.remove(sub) is True
    assert registry.remove(sub) is False
    assert not sub.active
    assert sub not in registry


def test_clear_deactivates_everything():
    registry = SubscriptionRegistry()

    async def handler(event):
        pass

    subs = [registry.add(always, handler) for _ in range(3)]
    registry.clear()

    assert len(registry) == 0
    assert not any(s.active for s in subs)


def test_ids_are_unique():
    registry = SubscriptionRegistry()

    async def handler(event):
        pass

    a = registry.add(always, handler)
    b = registry.add(always, handler)
    assert a.id != b.id
