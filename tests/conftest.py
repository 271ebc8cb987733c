"""Shared test helpers: a controllable clock and an in-memory gateway."""

from __future__ import annotations

import asyncio
import heapq
import itertools

import pytest

from agent_courier.gateway.base import ChatGateway
from agent_courier.models import ApprovalOption, MessageHandle, ResponseEvent
from agent_courier.ratelimit import RateLimiter

CHAT_ID = "12345"


async def settle(rounds: int = 20) -> None:
    """Let ready tasks run until they block again."""
    for _ in range(rounds):
        await asyncio.sleep(0)


class FakeClock:
    """Clock whose time only moves when a test calls ``advance()``."""

    def __init__(self, start: float = 0.0) -> None:
        self._now = start
        self._sleepers: list[tuple[float, int, asyncio.Future]] = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._now

    async def sleep(self, seconds: float) -> None:
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        fut = asyncio.get_running_loop().create_future()
        heapq.heappush(self._sleepers, (self._now + seconds, next(self._seq), fut))
        await fut

    async def advance(self, seconds: float) -> None:
        """Move time forward, waking sleepers in deadline order."""
        target = self._now + seconds
        await settle()
        while self._sleepers and self._sleepers[0][0] <= target:
            deadline, _, fut = heapq.heappop(self._sleepers)
            self._now = max(self._now, deadline)
            if not fut.done():
                fut.set_result(None)
            await settle()
        self._now = target
        await settle()


class MockGateway(ChatGateway):
    """In-memory gateway that records every outbound call."""

    def __init__(self, chat_id: str = CHAT_ID, **kwargs):
        kwargs.setdefault(
            "rate_limiter",
            RateLimiter(max_per_minute=10_000, burst_size=10_000, clock=kwargs.get("clock")),
        )
        kwargs.setdefault("backoff_seconds", 0)
        kwargs.setdefault("receipt_reaction", None)
        super().__init__(**kwargs)
        self.chat_id = chat_id
        self.next_id = 100
        self.sent: list[str] = []
        self.edits: list[tuple[int, str]] = []
        self.interactive: list[tuple[str, str, list[ApprovalOption]]] = []
        self.reactions: list[tuple[int, str]] = []
        self.marked: list[tuple[int, int]] = []
        self.send_attempts = 0
        # Number of upcoming platform calls to fail
        self.fail_sends = 0
        self.fail_edits = 0
        self.fail_interactive = 0
        self.fail_reactions = False
        self.error: Exception = ConnectionError("network down")

    def _new_handle(self) -> MessageHandle:
        handle = MessageHandle(chat_id=self.chat_id, message_id=self.next_id)
        self.next_id += 1
        return handle

    async def _platform_start(self) -> None:
        pass

    async def _platform_stop(self) -> None:
        pass

    async def _platform_send(self, text: str) -> MessageHandle:
        self.send_attempts += 1
        if self.fail_sends:
            self.fail_sends -= 1
            raise self.error
        self.sent.append(text)
        return self._new_handle()

    async def _platform_edit(self, handle: MessageHandle, text: str) -> None:
        if self.fail_edits:
            self.fail_edits -= 1
            raise self.error
        self.edits.append((handle.message_id, text))

    async def _platform_send_interactive(
        self, header: str, question: str, options: list[ApprovalOption]
    ) -> MessageHandle:
        if self.fail_interactive:
            self.fail_interactive -= 1
            raise self.error
        self.interactive.append((header, question, options))
        return self._new_handle()

    async def _platform_react(self, handle: MessageHandle, emoji: str) -> None:
        if self.fail_reactions:
            raise RuntimeError("reactions not allowed")
        self.reactions.append((handle.message_id, emoji))

    async def _platform_mark_selected(
        self, handle: MessageHandle, options: list[ApprovalOption], index: int
    ) -> None:
        self.marked.append((handle.message_id, index))

    # Simulated operator actions

    async def press(self, message_id: int, index: int, chat_id: str | None = None) -> int:
        return await self._dispatch_event(
            ResponseEvent(
                kind="callback",
                chat_id=chat_id or self.chat_id,
                message_id=message_id,
                option_index=index,
                sender="@operator",
            )
        )

    async def reply(self, text: str, message_id: int = 9000, chat_id: str | None = None) -> int:
        return await self._dispatch_event(
            ResponseEvent(
                kind="message",
                chat_id=chat_id or self.chat_id,
                message_id=message_id,
                text=text,
                sender="@operator",
            )
        )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def gateway(clock: FakeClock) -> MockGateway:
    return MockGateway(clock=clock)
