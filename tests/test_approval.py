"""Tests for ApprovalCoordinator."""

import asyncio

import pytest

from agent_courier.approval import ApprovalCoordinator
from agent_courier.errors import AlreadyAwaitedError, GatewaySendError, NotFoundError
from agent_courier.models import OTHER_INDEX, ApprovalOption

from conftest import MockGateway, settle

OPTIONS = [
    ApprovalOption(label="Yes", description="Go ahead"),
    ApprovalOption(label="No"),
    ApprovalOption(label="Later"),
]


@pytest.fixture
def coordinator(gateway, clock):
    return ApprovalCoordinator(gateway, clock=clock)


@pytest.mark.asyncio
async def test_create_posts_question(coordinator, gateway):
    created = await coordinator.create("Deploy to prod?", OPTIONS, header="Deploy")

    assert created.success
    assert created.id == f"approval_{created.message_id}"
    assert coordinator.pending_ids() == [created.id]
    header, question, options = gateway.interactive[0]
    assert header == "Deploy"
    assert question == "Deploy to prod?"
    assert [o.label for o in options] == ["Yes", "No", "Later"]


@pytest.mark.asyncio
async def test_create_uses_default_header(coordinator, gateway):
    await coordinator.create("Continue?", OPTIONS)
    assert gateway.interactive[0][0] == "Approval Request"


@pytest.mark.asyncio
async def test_create_requires_options(coordinator, gateway):
    with pytest.raises(ValueError):
        await coordinator.create("Anything?", [])
    assert gateway.interactive == []


@pytest.mark.asyncio
async def test_selection_resolves_wait(coordinator, gateway, clock):
    created = await coordinator.create("Deploy?", OPTIONS)
    task = asyncio.create_task(coordinator.wait(created.id))
    await clock.advance(3)

    await gateway.press(created.message_id, 1)
    result = await task

    assert result.selected == "No"
    assert result.custom_text is None
    assert not result.timed_out
    assert result.elapsed_seconds == pytest.approx(3.0)
    assert gateway.marked == [(created.message_id, 1)]
    assert len(gateway.subscriptions) == 0
    assert coordinator.get(created.id) is None


@pytest.mark.asyncio
async def test_wait_times_out(coordinator, gateway, clock):
    gateway.next_id = 42
    created = await coordinator.create("Deploy?", OPTIONS)
    assert created.id == "approval_42"

    task = asyncio.create_task(coordinator.wait("approval_42", timeout_seconds=5))
    await clock.advance(4.9)
    assert not task.done()

    await clock.advance(0.2)
    result = await task
    assert result.timed_out
    assert result.selected is None
    assert result.elapsed_seconds == 5

    # a late press changes nothing
    assert await gateway.press(42, 0) == 0
    assert gateway.marked == []
    assert coordinator.pending_ids() == []


@pytest.mark.asyncio
async def test_wait_times_out_with_real_clock():
    gateway = MockGateway()
    coordinator = ApprovalCoordinator(gateway)
    created = await coordinator.create("Quick?", OPTIONS)

    result = await coordinator.wait(created.id, timeout_seconds=0.05)

    assert result.timed_out
    assert len(gateway.subscriptions) == 0


@pytest.mark.asyncio
async def test_wait_uses_default_timeout(gateway, clock):
    coordinator = ApprovalCoordinator(gateway, default_timeout_seconds=30, clock=clock)
    created = await coordinator.create("Deploy?", OPTIONS)
    task = asyncio.create_task(coordinator.wait(created.id))

    await clock.advance(29)
    assert not task.done()
    await clock.advance(2)
    assert (await task).timed_out


@pytest.mark.asyncio
async def test_other_collects_custom_text(coordinator, gateway, clock):
    created = await coordinator.create("Which env?", OPTIONS)
    task = asyncio.create_task(coordinator.wait(created.id))
    await settle()

    await gateway.press(created.message_id, OTHER_INDEX)
    assert not task.done()
    assert gateway.sent == ["💬 Please send your custom response as a text message:"]
    assert gateway.marked == [(created.message_id, OTHER_INDEX)]

    await clock.advance(2)
    await gateway.reply("use staging")
    result = await task

    assert result.selected == "Other"
    assert result.custom_text == "use staging"
    assert not result.timed_out
    assert len(gateway.subscriptions) == 0


@pytest.mark.asyncio
async def test_invalid_index_is_ignored(coordinator, gateway):
    created = await coordinator.create("Deploy?", OPTIONS)
    task = asyncio.create_task(coordinator.wait(created.id))
    await settle()

    await gateway.press(created.message_id, 7)
    await settle()
    assert not task.done()

    await gateway.press(created.message_id, 0)
    assert (await task).selected == "Yes"


@pytest.mark.asyncio
async def test_press_on_other_message_is_ignored(coordinator, gateway):
    first = await coordinator.create("First?", OPTIONS)
    second = await coordinator.create("Second?", OPTIONS)
    task = asyncio.create_task(coordinator.wait(first.id))
    await settle()

    await gateway.press(second.message_id, 0)
    await settle()
    assert not task.done()

    await gateway.press(first.message_id, 2)
    assert (await task).selected == "Later"


@pytest.mark.asyncio
async def test_unknown_id_raises_not_found(coordinator):
    with pytest.raises(NotFoundError):
        await coordinator.wait("approval_999")


@pytest.mark.asyncio
async def test_second_wait_raises_already_awaited(coordinator, gateway):
    created = await coordinator.create("Deploy?", OPTIONS)
    task = asyncio.create_task(coordinator.wait(created.id))
    await settle()

    assert coordinator.is_awaited(created.id)
    with pytest.raises(AlreadyAwaitedError):
        await coordinator.wait(created.id)

    await gateway.press(created.message_id, 0)
    await task


@pytest.mark.asyncio
async def test_answered_request_cannot_be_awaited_again(coordinator, gateway):
    created = await coordinator.create("Deploy?", OPTIONS)
    task = asyncio.create_task(coordinator.wait(created.id))
    await settle()
    await gateway.press(created.message_id, 0)
    await task

    with pytest.raises(NotFoundError):
        await coordinator.wait(created.id)


@pytest.mark.asyncio
async def test_cancelled_wait_releases_listeners(coordinator, gateway):
    created = await coordinator.create("Deploy?", OPTIONS)
    task = asyncio.create_task(coordinator.wait(created.id))
    await settle()
    assert len(gateway.subscriptions) == 1

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert len(gateway.subscriptions) == 0
    assert not coordinator.is_awaited(created.id)
    assert coordinator.pending_ids() == []


@pytest.mark.asyncio
async def test_cleanup_removes_old_requests(coordinator, clock):
    created = await coordinator.create("Old?", OPTIONS)
    await clock.advance(23 * 3600)
    assert coordinator.cleanup_old() == 0

    await clock.advance(2 * 3600)
    assert coordinator.cleanup_old() == 1
    assert coordinator.get(created.id) is None


@pytest.mark.asyncio
async def test_cleanup_skips_awaited_requests(coordinator, gateway, clock):
    created = await coordinator.create("Long wait?", OPTIONS)
    task = asyncio.create_task(coordinator.wait(created.id, timeout_seconds=48 * 3600))
    await clock.advance(25 * 3600)

    assert coordinator.cleanup_old() == 0
    assert coordinator.get(created.id) is not None

    await gateway.press(created.message_id, 0)
    await task


@pytest.mark.asyncio
async def test_max_pending_evicts_oldest(gateway, clock):
    coordinator = ApprovalCoordinator(gateway, max_pending=2, clock=clock)
    first = await coordinator.create("1?", OPTIONS)
    second = await coordinator.create("2?", OPTIONS)
    third = await coordinator.create("3?", OPTIONS)

    assert coordinator.pending_ids() == [second.id, third.id]
    assert coordinator.get(first.id) is None


@pytest.mark.asyncio
async def test_sweeper_runs_periodically(gateway, clock):
    coordinator = ApprovalCoordinator(
        gateway, retention_seconds=10, sweep_interval_seconds=5, clock=clock
    )
    coordinator.start_sweeper()
    created = await coordinator.create("Forgotten?", OPTIONS)

    await clock.advance(9)
    assert coordinator.get(created.id) is not None

    await clock.advance(7)
    assert coordinator.get(created.id) is None

    await coordinator.shutdown()


@pytest.mark.asyncio
async def test_shutdown_ends_waits_as_timed_out(coordinator, gateway, clock):
    created = await coordinator.create("Deploy?", OPTIONS)
    task = asyncio.create_task(coordinator.wait(created.id))
    await clock.advance(1)

    await coordinator.shutdown()

    # listeners are gone as soon as shutdown returns
    assert len(gateway.subscriptions) == 0
    assert not coordinator.is_awaited(created.id)
    result = await task
    assert result.timed_out


@pytest.mark.asyncio
async def test_create_propagates_delivery_failure(coordinator, gateway):
    gateway.fail_interactive = 10

    with pytest.raises(GatewaySendError) as excinfo:
        await coordinator.create("Deploy?", OPTIONS)

    assert excinfo.value.operation == "send_interactive"
    assert excinfo.value.attempts == 3
    assert coordinator.pending_ids() == []


@pytest.mark.asyncio
async def test_custom_text_branch_still_times_out(coordinator, gateway, clock):
    created = await coordinator.create("Which env?", OPTIONS)
    task = asyncio.create_task(coordinator.wait(created.id, timeout_seconds=5))
    await clock.advance(1)

    await gateway.press(created.message_id, OTHER_INDEX)
    labels = sorted(sub.label for sub in gateway.subscriptions._subscriptions.values())
    assert labels == [f"reply:{created.message_id}", f"response:{created.message_id}"]

    await clock.advance(5)
    result = await task

    assert result.timed_out
    assert result.selected is None
    assert len(gateway.subscriptions) == 0
    # a reply after the deadline reaches nobody
    assert await gateway.reply("too late") == 0
