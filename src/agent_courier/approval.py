"""Approval coordination.

Creates interactive approval requests through a chat gateway and lets a
caller await the operator's answer with a deadline. Each request is
tracked by an id derived from the gateway's message id and is removed
exactly once: when answered, when its wait times out or is cancelled,
or by the periodic sweep of abandoned entries.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from agent_courier.clock import SYSTEM_CLOCK, Clock
from agent_courier.errors import AlreadyAwaitedError, ConfigurationError, NotFoundError
from agent_courier.gateway.base import ChatGateway
from agent_courier.models import (
    OTHER_INDEX,
    OTHER_LABEL,
    ApprovalOption,
    ApprovalRequest,
    ApprovalResult,
    CreateResult,
    ResponseEvent,
)
from agent_courier.subscriptions import Subscription

logger = logging.getLogger("agent_courier.approval")

_DEFAULT_TIMEOUT_S = 600.0
_DEFAULT_RETENTION_S = 24 * 60 * 60  # 24 hours
_DEFAULT_SWEEP_INTERVAL_S = 60 * 60  # 1 hour
_DEFAULT_MAX_PENDING = 50
_DEFAULT_HEADER = "Approval Request"
_CUSTOM_TEXT_PROMPT = "💬 Please send your custom response as a text message:"


@dataclass
class _Waiter:
    """State of one in-flight ``wait()``."""

    request: ApprovalRequest
    future: asyncio.Future
    started_at: float
    subscriptions: list[Subscription] = field(default_factory=list)
    released: asyncio.Event = field(default_factory=asyncio.Event)


class ApprovalCoordinator:
    """Creates approval requests and awaits their answers.

    Args:
        gateway: Chat gateway used to post questions and receive answers.
        default_timeout_seconds: Timeout used when ``wait()`` gets none.
        retention_seconds: Age after which an unawaited request is swept.
        sweep_interval_seconds: How often the background sweep runs.
        max_pending: Maximum number of tracked requests.
        clock: Time source for deadlines and ages.
    """

    def __init__(
        self,
        gateway: ChatGateway,
        *,
        default_timeout_seconds: float = _DEFAULT_TIMEOUT_S,
        retention_seconds: float = _DEFAULT_RETENTION_S,
        sweep_interval_seconds: float = _DEFAULT_SWEEP_INTERVAL_S,
        max_pending: int = _DEFAULT_MAX_PENDING,
        clock: Clock | None = None,
    ) -> None:
        if default_timeout_seconds <= 0:
            raise ConfigurationError("default_timeout_seconds must be positive")
        if max_pending < 1:
            raise ConfigurationError("max_pending must be at least 1")
        self._gateway = gateway
        self._default_timeout_s = default_timeout_seconds
        self._retention_s = retention_seconds
        self._sweep_interval_s = sweep_interval_seconds
        self._max_pending = max_pending
        self._clock = clock or SYSTEM_CLOCK
        # approval id → request, insertion ordered (oldest first)
        self._pending: dict[str, ApprovalRequest] = {}
        # approval id → in-flight wait
        self._waiters: dict[str, _Waiter] = {}
        self._sweep_task: asyncio.Task | None = None
        self._closing = False

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def get(self, approval_id: str) -> ApprovalRequest | None:
        return self._pending.get(approval_id)

    def pending_ids(self) -> list[str]:
        return list(self._pending)

    def is_awaited(self, approval_id: str) -> bool:
        return approval_id in self._waiters

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create(
        self,
        question: str,
        options: Sequence[ApprovalOption],
        header: str | None = None,
    ) -> CreateResult:
        """Post an interactive question and start tracking it.

        Raises:
            ValueError: If ``options`` is empty.
            GatewaySendError: If the gateway could not deliver the question.
        """
        if not options:
            raise ValueError("options must not be empty")
        self._make_room()

        result = await self._gateway.send_interactive(header or _DEFAULT_HEADER, question, options)
        approval_id = f"approval_{result.handle.message_id}"
        self._pending[approval_id] = ApprovalRequest(
            id=approval_id,
            source=result.handle,
            question=question,
            header=header,
            options=list(options),
            created_at=self._clock.now(),
        )
        logger.info(
            "Approval request sent (approval_id=%s, header=%s)",
            approval_id,
            (header or question)[:50],
        )
        return CreateResult(id=approval_id, message_id=result.handle.message_id)

    def _make_room(self) -> None:
        if len(self._pending) < self._max_pending:
            return
        logger.info(
            "Max pending approvals reached, cleaning up (size=%d, max=%d)",
            len(self._pending),
            self._max_pending,
        )
        self.cleanup_old()
        if len(self._pending) < self._max_pending:
            return
        for approval_id in self._pending:
            if approval_id not in self._waiters:
                del self._pending[approval_id]
                logger.info("Evicted oldest approval to make room (approval_id=%s)", approval_id)
                return
        logger.warning("Every pending approval is being awaited, exceeding max_pending")

    # ------------------------------------------------------------------
    # Wait
    # ------------------------------------------------------------------

    async def wait(self, approval_id: str, timeout_seconds: float | None = None) -> ApprovalResult:
        """Wait for the operator's answer to an approval request.

        Returns the selected label (and custom text for "Other"), or a
        result with ``timed_out=True`` if the deadline passes or the
        coordinator shuts down. The request is forgotten afterwards.

        Raises:
            NotFoundError: The id is unknown, already answered, or swept.
            AlreadyAwaitedError: Another ``wait()`` is in progress for the id.
        """
        request = self._pending.get(approval_id)
        if request is None or request.resolved:
            raise NotFoundError(f"No pending approval found: {approval_id}")
        if approval_id in self._waiters:
            raise AlreadyAwaitedError(f"Approval is already being awaited: {approval_id}")

        timeout_s = timeout_seconds if timeout_seconds is not None else self._default_timeout_s
        started = self._clock.now()

        if self._closing:
            self._pending.pop(approval_id, None)
            return ApprovalResult(timed_out=True)

        waiter = _Waiter(
            request=request,
            future=asyncio.get_running_loop().create_future(),
            started_at=started,
        )
        self._waiters[approval_id] = waiter
        timer: asyncio.Task | None = None
        try:
            waiter.subscriptions.append(
                self._gateway.on_response(request.source, self._make_response_handler(waiter))
            )
            timer = asyncio.create_task(self._clock.sleep(timeout_s))
            await asyncio.wait({waiter.future, timer}, return_when=asyncio.FIRST_COMPLETED)

            if waiter.future.done():
                result = waiter.future.result()
            else:
                logger.info("Approval request timed out (approval_id=%s)", approval_id)
                result = ApprovalResult(timed_out=True, elapsed_seconds=timeout_s)
            request.resolved = True
            return result
        finally:
            if timer is not None:
                timer.cancel()
            if not waiter.future.done():
                waiter.future.cancel()
            self._release(approval_id, waiter)

    def _release(self, approval_id: str, waiter: _Waiter) -> None:
        """Drop listeners and state for a finished wait."""
        for sub in waiter.subscriptions:
            try:
                removed = self._gateway.off_response(sub)
            except Exception:
                logger.exception(
                    "Failed to remove approval listener (approval_id=%s, subscription=%d)",
                    approval_id,
                    sub.id,
                )
                continue
            if not removed:
                logger.error(
                    "Approval listener was not registered at release "
                    "(approval_id=%s, subscription=%d)",
                    approval_id,
                    sub.id,
                )
        waiter.subscriptions.clear()
        self._waiters.pop(approval_id, None)
        self._pending.pop(approval_id, None)
        waiter.released.set()

    def _make_response_handler(self, waiter: _Waiter):
        request = waiter.request

        async def on_button(event: ResponseEvent) -> None:
            if waiter.future.done():
                return
            index = event.option_index
            if index == OTHER_INDEX:
                await self._begin_custom_text(waiter)
                return
            if index is None or not 0 <= index < len(request.options):
                logger.warning(
                    "Ignoring response with invalid option (approval_id=%s, index=%s)",
                    request.id,
                    index,
                )
                return

            label = request.options[index].label
            self._resolve(waiter, ApprovalResult(selected=label))
            logger.info(
                "Approval response received (approval_id=%s, selected=%s)", request.id, label
            )
            await self._gateway.mark_selected(request.source, request.options, index)

        return on_button

    async def _begin_custom_text(self, waiter: _Waiter) -> None:
        """Switch a wait to the free-text branch."""
        request = waiter.request
        if any(sub.label.startswith("reply:") for sub in waiter.subscriptions):
            return

        async def on_text(event: ResponseEvent) -> None:
            if waiter.future.done() or not event.text:
                return
            self._resolve(waiter, ApprovalResult(selected=OTHER_LABEL, custom_text=event.text))
            logger.info(
                "Approval response received (approval_id=%s, custom_text=%s)",
                request.id,
                event.text[:50],
            )

        waiter.subscriptions.append(self._gateway.on_reply(request.source, on_text))
        await self._gateway.mark_selected(request.source, request.options, OTHER_INDEX)
        try:
            await self._gateway.send(_CUSTOM_TEXT_PROMPT, "high")
        except Exception:
            logger.exception("Failed to send custom text prompt (approval_id=%s)", request.id)

    def _resolve(self, waiter: _Waiter, result: ApprovalResult) -> None:
        if waiter.future.done():
            return
        result.elapsed_seconds = round(self._clock.now() - waiter.started_at, 3)
        waiter.request.resolved = True
        waiter.future.set_result(result)

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------

    def cleanup_old(self) -> int:
        """Forget requests older than the retention period.

        Requests with an active ``wait()`` are never touched. Returns the
        number of requests removed.
        """
        now = self._clock.now()
        cleaned = 0
        for approval_id, request in list(self._pending.items()):
            if approval_id in self._waiters:
                continue
            age = now - request.created_at
            if age > self._retention_s:
                del self._pending[approval_id]
                cleaned += 1
                logger.info(
                    "Cleaned up old approval (approval_id=%s, age_hours=%.1f)",
                    approval_id,
                    age / 3600,
                )
        if cleaned:
            logger.info(
                "Approval cleanup completed (cleaned=%d, remaining=%d)",
                cleaned,
                len(self._pending),
            )
        return cleaned

    def start_sweeper(self) -> None:
        """Run ``cleanup_old()`` periodically in the background."""
        if self._sweep_task is None or self._sweep_task.done():
            self._closing = False
            self._sweep_task = asyncio.create_task(self._sweep_loop())
            logger.info(
                "Approval sweeper started (interval_minutes=%d)", self._sweep_interval_s // 60
            )

    async def _sweep_loop(self) -> None:
        try:
            while True:
                await self._clock.sleep(self._sweep_interval_s)
                try:
                    self.cleanup_old()
                except Exception:
                    logger.exception("Approval sweep failed")
        except asyncio.CancelledError:
            pass

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def shutdown(self) -> None:
        """Stop the sweeper and end every in-flight wait as timed out."""
        self._closing = True
        task, self._sweep_task = self._sweep_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        waiters = list(self._waiters.values())
        for waiter in waiters:
            if not waiter.future.done():
                waiter.future.set_result(
                    ApprovalResult(
                        timed_out=True,
                        elapsed_seconds=round(self._clock.now() - waiter.started_at, 3),
                    )
                )
        # Each wait releases its listeners in its own finally block.
        await asyncio.gather(*(w.released.wait() for w in waiters))
        logger.info("Approval coordinator shut down (pending=%d)", len(self._pending))
