"""Abstract base class for chat gateways.

ChatGateway provides the shared machinery for every chat platform:
rate limiting, retry with exponential backoff, cosmetic reactions, and
subscription-based dispatch of operator responses. Platform
implementations override the ``_platform_*`` methods.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Sequence
from typing import Any, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from agent_courier.clock import SYSTEM_CLOCK, Clock
from agent_courier.errors import GatewaySendError
from agent_courier.models import (
    ApprovalOption,
    EventHandler,
    EventPredicate,
    MessageHandle,
    Priority,
    ResponseEvent,
    SendResult,
)
from agent_courier.ratelimit import RateLimiter
from agent_courier.subscriptions import Subscription, SubscriptionRegistry

logger = logging.getLogger("agent_courier.gateway")

T = TypeVar("T")

RECEIPT_REACTION = "🤖"


class ChatGateway(ABC):
    """Abstract base class for chat gateways.

    Consumers interact through the public API (``send``, ``edit``,
    ``send_interactive``, ``on_response``, ...). Every outbound call waits
    on the shared rate limiter and is retried on transient failure;
    after the last attempt a ``GatewaySendError`` is raised.

    Subclasses implement the ``_platform_*`` methods and call
    ``_dispatch_event`` when the operator does something.

    Args:
        rate_limiter: Shared limiter for all outbound calls. A default
            limiter (20/min, burst 5) is created if omitted.
        retry_attempts: Attempts per outbound call, including the first.
        backoff_seconds: Base delay; waits are 1×, 2×, 4×... this value.
        backoff_max_seconds: Upper bound for a single backoff wait.
        receipt_reaction: Emoji added to sent messages, or None to skip.
        clock: Time source for backoff sleeps.
    """

    def __init__(
        self,
        *,
        rate_limiter: RateLimiter | None = None,
        retry_attempts: int = 3,
        backoff_seconds: float = 1.0,
        backoff_max_seconds: float = 10.0,
        receipt_reaction: str | None = RECEIPT_REACTION,
        clock: Clock | None = None,
    ) -> None:
        self._clock = clock or SYSTEM_CLOCK
        self._limiter = rate_limiter or RateLimiter(clock=self._clock)
        self._retry_attempts = max(1, retry_attempts)
        self._backoff_s = backoff_seconds
        self._backoff_max_s = backoff_max_seconds
        self._receipt_reaction = receipt_reaction
        self._subscriptions = SubscriptionRegistry()
        self._running = False

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._limiter

    @property
    def subscriptions(self) -> SubscriptionRegistry:
        return self._subscriptions

    @property
    def is_running(self) -> bool:
        """True between ``start()`` and ``stop()`` (the update loop is polling)."""
        return self._running

    # ------------------------------------------------------------------
    # Public API: Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Connect to the platform and start receiving updates."""
        if self._running:
            return
        await self._platform_start()
        self._running = True
        logger.info("Gateway started: %s", type(self).__name__)

    async def stop(self) -> None:
        """Stop receiving updates and disconnect."""
        if not self._running:
            return
        await self._platform_stop()
        self._running = False
        if len(self._subscriptions):
            logger.warning(
                "Gateway stopped with %d subscription(s) still registered",
                len(self._subscriptions),
            )
        logger.info("Gateway stopped: %s", type(self).__name__)

    # ------------------------------------------------------------------
    # Public API: Outbound
    # ------------------------------------------------------------------

    async def send(self, text: str, priority: Priority = "normal") -> SendResult:
        """Send a text message.

        Raises:
            GatewaySendError: If every attempt failed.
        """
        handle = await self._with_retry("send", self._platform_send, text)
        logger.info("Message sent (message_id=%s, priority=%s)", handle.message_id, priority)
        if self._receipt_reaction:
            await self.react(handle, self._receipt_reaction)
        return SendResult(handle=handle)

    async def edit(self, handle: MessageHandle, text: str) -> SendResult:
        """Replace the text of a message sent earlier.

        Raises:
            GatewaySendError: If every attempt failed.
        """
        await self._with_retry("edit", self._platform_edit, handle, text)
        logger.info("Message edited (message_id=%s)", handle.message_id)
        return SendResult(handle=handle)

    async def send_interactive(
        self,
        header: str,
        question: str,
        options: Sequence[ApprovalOption],
    ) -> SendResult:
        """Send a question with one selectable entry per option plus "Other".

        Raises:
            GatewaySendError: If every attempt failed.
        """
        handle = await self._with_retry(
            "send_interactive", self._platform_send_interactive, header, question, list(options)
        )
        logger.info(
            "Interactive message sent (message_id=%s, options=%d)",
            handle.message_id,
            len(options),
        )
        return SendResult(handle=handle)

    async def react(self, handle: MessageHandle, emoji: str) -> bool:
        """Set a reaction on a message. Cosmetic: failures are logged, not raised."""
        try:
            await self._limiter.throttle()
            await self._platform_react(handle, emoji)
            return True
        except Exception as exc:
            logger.info("Could not add reaction (message_id=%s): %s", handle.message_id, exc)
            return False

    async def mark_selected(
        self,
        handle: MessageHandle,
        options: Sequence[ApprovalOption],
        index: int,
    ) -> None:
        """Highlight the chosen option on an interactive message. Cosmetic."""
        try:
            await self._limiter.throttle()
            await self._platform_mark_selected(handle, list(options), index)
        except Exception as exc:
            logger.info(
                "Could not update button appearance (message_id=%s): %s",
                handle.message_id,
                exc,
            )

    # ------------------------------------------------------------------
    # Public API: Subscriptions
    # ------------------------------------------------------------------

    def subscribe(
        self, predicate: EventPredicate, handler: EventHandler, *, label: str = ""
    ) -> Subscription:
        """Register a handler for every event matching ``predicate``."""
        return self._subscriptions.add(predicate, handler, label=label)

    def unsubscribe(self, subscription: Subscription) -> bool:
        """Release a subscription. Returns False if it was not registered."""
        return self._subscriptions.remove(subscription)

    def on_response(self, handle: MessageHandle, handler: EventHandler) -> Subscription:
        """Subscribe to button presses on one interactive message."""

        def matches(event: ResponseEvent) -> bool:
            return (
                event.kind == "callback"
                and event.chat_id == handle.chat_id
                and event.message_id == handle.message_id
            )

        return self.subscribe(matches, handler, label=f"response:{handle.message_id}")

    def on_reply(self, handle: MessageHandle, handler: EventHandler) -> Subscription:
        """Subscribe to plain text messages in the chat of ``handle``."""

        def matches(event: ResponseEvent) -> bool:
            return event.kind == "message" and event.chat_id == handle.chat_id

        return self.subscribe(matches, handler, label=f"reply:{handle.message_id}")

    def off_response(self, subscription: Subscription) -> bool:
        """Release a subscription made with ``on_response`` or ``on_reply``."""
        return self.unsubscribe(subscription)

    async def _dispatch_event(self, event: ResponseEvent) -> int:
        """Deliver an inbound event to subscribers. Platforms call this."""
        delivered = await self._subscriptions.dispatch(event)
        if not delivered:
            logger.debug(
                "No subscriber for %s event (message_id=%s)", event.kind, event.message_id
            )
        return delivered

    # ------------------------------------------------------------------
    # Retry internals
    # ------------------------------------------------------------------

    def _is_transient(self, exc: BaseException) -> bool:
        """Whether a failed call is worth retrying. Platforms may narrow this."""
        return isinstance(exc, Exception)

    async def _with_retry(
        self, operation: str, fn: Callable[..., Awaitable[T]], *args: Any
    ) -> T:
        """Run ``fn`` with throttling and exponential backoff."""
        attempts = 0
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._retry_attempts),
            wait=wait_exponential(multiplier=self._backoff_s, max=self._backoff_max_s),
            retry=retry_if_exception(self._is_transient),
            before_sleep=self._log_retry(operation),
            sleep=self._clock.sleep,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    await self._limiter.throttle()
                    return await fn(*args)
        except Exception as exc:
            logger.error("%s failed after %d attempt(s): %s", operation, attempts, exc)
            raise GatewaySendError(operation, attempts, str(exc)) from exc
        raise AssertionError("unreachable")

    def _log_retry(self, operation: str) -> Callable[[RetryCallState], None]:
        def log(state: RetryCallState) -> None:
            exc = state.outcome.exception() if state.outcome else None
            delay = state.next_action.sleep if state.next_action else 0.0
            logger.warning(
                "%s failed (attempt %d/%d), retrying in %.1fs: %s",
                operation,
                state.attempt_number,
                self._retry_attempts,
                delay,
                exc,
            )

        return log

    # ------------------------------------------------------------------
    # Platform abstract methods
    # ------------------------------------------------------------------

    @abstractmethod
    async def _platform_start(self) -> None:
        """Start the platform client and its update loop."""

    @abstractmethod
    async def _platform_stop(self) -> None:
        """Stop the update loop and release the client."""

    @abstractmethod
    async def _platform_send(self, text: str) -> MessageHandle:
        """Send a text message. Return its handle."""

    @abstractmethod
    async def _platform_edit(self, handle: MessageHandle, text: str) -> None:
        """Replace the text of an existing message."""

    @abstractmethod
    async def _platform_send_interactive(
        self, header: str, question: str, options: list[ApprovalOption]
    ) -> MessageHandle:
        """Send a question with platform-specific selectable options (buttons, etc.)."""

    # ------------------------------------------------------------------
    # Platform optional methods (override as needed)
    # ------------------------------------------------------------------

    async def _platform_react(self, handle: MessageHandle, emoji: str) -> None:
        """Set a reaction. Override if the platform supports it."""

    async def _platform_mark_selected(
        self, handle: MessageHandle, options: list[ApprovalOption], index: int
    ) -> None:
        """Highlight the selected option. Override if the platform supports it."""
