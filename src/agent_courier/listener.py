"""Inbound command listener.

While active, every plain message the operator sends to the chat is
queued as an ``InboundCommand`` for the agent to pick up, and marked
with a reaction so the operator sees it arrived.
"""

from __future__ import annotations

import logging
import time
from collections import deque

from agent_courier.gateway.base import RECEIPT_REACTION, ChatGateway
from agent_courier.models import InboundCommand, MessageHandle, ResponseEvent
from agent_courier.subscriptions import Subscription

logger = logging.getLogger("agent_courier.listener")


class CommandListener:
    """Queues operator messages from one chat.

    Args:
        gateway: Gateway delivering inbound messages.
        chat_id: Chat to accept messages from.
    """

    def __init__(self, gateway: ChatGateway, chat_id: str) -> None:
        self._gateway = gateway
        self._chat_id = str(chat_id)
        self._queue: deque[InboundCommand] = deque()
        self._subscription: Subscription | None = None

    @property
    def listening(self) -> bool:
        return self._subscription is not None

    def start(self) -> bool:
        """Start queueing messages. Returns False if already listening."""
        if self._subscription is not None:
            logger.info("Message listener already active")
            return False
        self._subscription = self._gateway.subscribe(
            self._matches, self._on_message, label="listener"
        )
        logger.info("Message listener started")
        return True

    def stop(self) -> bool:
        """Stop queueing and discard queued commands. Returns False if not listening."""
        if self._subscription is None:
            return False
        if not self._gateway.unsubscribe(self._subscription):
            logger.error("Listener subscription was not registered at stop")
        self._subscription = None
        self._queue.clear()
        logger.info("Message listener stopped")
        return True

    def pending(self, limit: int = 10) -> tuple[list[InboundCommand], int]:
        """Pop up to ``limit`` queued commands, oldest first.

        Returns the commands and how many remain queued.
        """
        commands = [self._queue.popleft() for _ in range(min(max(0, limit), len(self._queue)))]
        logger.info("Retrieved pending commands (count=%d)", len(commands))
        return commands, len(self._queue)

    def status(self) -> dict:
        return {
            "listening": self.listening,
            "pending_commands": len(self._queue),
            "polling_active": self._gateway.is_running,
        }

    def _matches(self, event: ResponseEvent) -> bool:
        return event.kind == "message" and event.chat_id == self._chat_id

    async def _on_message(self, event: ResponseEvent) -> None:
        if not event.text:
            return
        self._queue.append(
            InboundCommand(
                id=event.message_id,
                text=event.text,
                sender=event.sender,
                received_at=time.time(),
            )
        )
        logger.info("Command received (from=%s): %s", event.sender, event.text[:50])
        await self._gateway.react(
            MessageHandle(chat_id=event.chat_id, message_id=event.message_id), RECEIPT_REACTION
        )
