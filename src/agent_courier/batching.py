"""Notification batcher.

Collects low-urgency notifications and flushes them as a single combined
message after a window, so rapid-fire notifications don't flood the chat.
High-priority notifications flush the queue immediately.

Stale-drop policy: before each ``add()``, queued messages older than
``stale_multiplier × window_seconds`` are discarded without being sent.
This only happens when the flush timer is stuck, and it keeps memory
bounded at the cost of losing those messages.
"""

from __future__ import annotations

import asyncio
import logging

from agent_courier.clock import SYSTEM_CLOCK, Clock
from agent_courier.errors import ConfigurationError
from agent_courier.models import EditFn, PendingMessage, Priority, SendFn

logger = logging.getLogger("agent_courier.batching")

SEPARATOR = "\n\n---\n\n"


class MessageBatcher:
    """Batches notifications and flushes them through send/edit callbacks.

    A flush sends a short "compacting" placeholder, then edits it in place
    with the combined text.

    Args:
        send: Async ``(text, priority) → SendResult``.
        edit: Async ``(handle, text) → SendResult``.
        window_seconds: Seconds to accumulate before flushing (default 30).
        max_queue_size: Queue length that forces a flush (default 100).
        stale_multiplier: Queued messages older than this many windows are
            dropped on the next ``add()`` (default 2.0).
        clock: Time source (defaults to the system clock).
    """

    def __init__(
        self,
        send: SendFn,
        edit: EditFn,
        *,
        window_seconds: float = 30.0,
        max_queue_size: int = 100,
        stale_multiplier: float = 2.0,
        clock: Clock | None = None,
    ) -> None:
        if window_seconds <= 0:
            raise ConfigurationError(f"window_seconds must be positive (got {window_seconds})")
        if max_queue_size < 1:
            raise ConfigurationError(f"max_queue_size must be at least 1 (got {max_queue_size})")
        if stale_multiplier < 1:
            raise ConfigurationError(
                f"stale_multiplier must be at least 1 (got {stale_multiplier})"
            )
        self._send = send
        self._edit = edit
        self._window_s = window_seconds
        self._max_queue_size = max_queue_size
        self._stale_after_s = window_seconds * stale_multiplier
        self._clock = clock or SYSTEM_CLOCK
        self._queue: list[PendingMessage] = []
        self._timer: asyncio.Task | None = None
        self._lock = asyncio.Lock()

    @property
    def pending(self) -> list[PendingMessage]:
        """Snapshot of the queued messages, oldest first."""
        return list(self._queue)

    @property
    def timer_armed(self) -> bool:
        return self._timer is not None

    async def add(self, text: str, priority: Priority = "normal") -> str | None:
        """Queue a notification.

        Returns the combined text when this call triggered a flush whose
        delivery failed (the caller may send it another way), else None.
        """
        self._drop_stale()
        self._queue.append(PendingMessage(text, priority, self._clock.now()))

        # The batch is taken before any await so later adds start a new one.
        if priority == "high":
            return await self._send_batch(self._take_batch())

        if len(self._queue) > self._max_queue_size:
            logger.info(
                "Message queue over capacity, flushing (size=%d, max=%d)",
                len(self._queue),
                self._max_queue_size,
            )
            return await self._send_batch(self._take_batch())

        if self._timer is None:
            self._timer = asyncio.create_task(self._flush_after_delay())
        return None

    async def flush(self) -> str | None:
        """Send everything queued as one combined message.

        Returns None if the queue was empty or the combined message was
        delivered. Returns the combined text if the placeholder send or the
        edit failed; downstream failures are logged, never raised.
        """
        batch = self._take_batch()
        if not batch:
            return None
        return await self._send_batch(batch)

    def _take_batch(self) -> list[PendingMessage]:
        """Detach the queued messages and disarm the timer."""
        self._cancel_timer()
        batch, self._queue = self._queue, []
        return batch

    async def _send_batch(self, batch: list[PendingMessage]) -> str | None:
        # Batches go out one at a time, in the order they were taken.
        async with self._lock:
            count = len(batch)
            combined = SEPARATOR.join(m.text for m in batch)
            plural = "s" if count > 1 else ""

            try:
                placeholder = await self._send(f"📦 Compacting {count} message{plural}...", "high")
            except Exception:
                logger.exception("Failed to send compacting notification")
                return combined

            try:
                await self._edit(placeholder.handle, f"✅ Compacting complete\n\n{combined}")
            except Exception:
                logger.exception(
                    "Failed to edit compacting notification (message_id=%s)",
                    placeholder.message_id,
                )
                return combined

            logger.debug("Flushed %d batched message%s", count, plural)
            return None

    async def close(self) -> None:
        """Cancel the timer and make a best-effort final flush."""
        leftover = await self.flush()
        if leftover:
            await self._deliver_leftover(leftover)

    async def _flush_after_delay(self) -> None:
        """Wait for the window, then flush."""
        try:
            await self._clock.sleep(self._window_s)
        except asyncio.CancelledError:
            return
        if self._timer is asyncio.current_task():
            self._timer = None
        leftover = await self.flush()
        if leftover:
            await self._deliver_leftover(leftover)

    async def _deliver_leftover(self, text: str) -> None:
        try:
            await self._send(text, "high")
        except Exception:
            logger.exception("Failed to deliver batched messages, %d chars dropped", len(text))

    def _cancel_timer(self) -> None:
        timer, self._timer = self._timer, None
        if timer is not None and timer is not asyncio.current_task():
            timer.cancel()

    def _drop_stale(self) -> None:
        cutoff = self._clock.now() - self._stale_after_s
        kept = [m for m in self._queue if m.enqueued_at > cutoff]
        dropped = len(self._queue) - len(kept)
        if dropped:
            self._queue = kept
            logger.warning(
                "Dropped %d stale queued message%s (remaining=%d)",
                dropped,
                "s" if dropped > 1 else "",
                len(kept),
            )
