"""Event subscriptions for inbound operator actions.

The gateway turns platform updates (button presses, text messages) into
``ResponseEvent`` objects and hands them to a ``SubscriptionRegistry``,
which forwards each event to every subscription whose predicate accepts
it. Subscribers own their ``Subscription`` handle and must release it.

Example::

    registry = SubscriptionRegistry()
    sub = registry.add(lambda e: e.kind == "callback", handler)
    await registry.dispatch(event)
    registry.remove(sub)
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field

from agent_courier.models import EventHandler, EventPredicate, ResponseEvent

logger = logging.getLogger("agent_courier.subscriptions")

_ids = itertools.count(1)


@dataclass(eq=False)
class Subscription:
    """Handle for a registered event handler."""

    predicate: EventPredicate
    handler: EventHandler
    label: str = ""
    id: int = field(default_factory=lambda: next(_ids))
    active: bool = True


class SubscriptionRegistry:
    """Ordered set of subscriptions with predicate-based dispatch."""

    def __init__(self) -> None:
        self._subscriptions: dict[int, Subscription] = {}

    def __len__(self) -> int:
        return len(self._subscriptions)

    def __contains__(self, subscription: Subscription) -> bool:
        return subscription.id in self._subscriptions

    def add(self, predicate: EventPredicate, handler: EventHandler, *, label: str = "") -> Subscription:
        """Register a handler. Returns the handle needed to remove it."""
        sub = Subscription(predicate=predicate, handler=handler, label=label)
        self._subscriptions[sub.id] = sub
        logger.debug("Subscription added: %s (id=%d)", label or "anonymous", sub.id)
        return sub

    def remove(self, subscription: Subscription) -> bool:
        """Deactivate and remove a subscription.

        Returns False if it was not registered (already removed or foreign).
        """
        subscription.active = False
        removed = self._subscriptions.pop(subscription.id, None) is not None
        if removed:
            logger.debug(
                "Subscription removed: %s (id=%d)",
                subscription.label or "anonymous",
                subscription.id,
            )
        return removed

    def clear(self) -> None:
        for sub in self._subscriptions.values():
            sub.active = False
        self._subscriptions.clear()

    async def dispatch(self, event: ResponseEvent) -> int:
        """Deliver an event to every matching subscription.

        Handlers run in registration order. A subscription removed while
        the event is being delivered is skipped. Handler exceptions are
        logged and do not stop delivery to the others.

        Returns the number of handlers invoked.
        """
        delivered = 0
        for sub in list(self._subscriptions.values()):
            if not sub.active:
                continue
            try:
                if not sub.predicate(event):
                    continue
                delivered += 1
                await sub.handler(event)
            except Exception:
                logger.exception(
                    "Subscription handler failed (id=%d, kind=%s, message_id=%s)",
                    sub.id,
                    event.kind,
                    event.message_id,
                )
        return delivered
