"""agent-courier: Keep your AI agents in touch with a human operator through chat."""

from agent_courier.approval import ApprovalCoordinator
from agent_courier.batching import MessageBatcher
from agent_courier.errors import (
    AlreadyAwaitedError,
    ConfigurationError,
    CourierError,
    GatewaySendError,
    NotFoundError,
)
from agent_courier.gateway.base import ChatGateway
from agent_courier.models import (
    ApprovalOption,
    ApprovalRequest,
    ApprovalResult,
    CreateResult,
    MessageHandle,
    ResponseEvent,
    SendResult,
)
from agent_courier.ratelimit import RateLimiter
from agent_courier.service import Courier

__all__ = [
    # Core components
    "ApprovalCoordinator",
    "ChatGateway",
    "Courier",
    "MessageBatcher",
    "RateLimiter",
    # Models
    "ApprovalOption",
    "ApprovalRequest",
    "ApprovalResult",
    "CreateResult",
    "MessageHandle",
    "ResponseEvent",
    "SendResult",
    # Errors
    "AlreadyAwaitedError",
    "ConfigurationError",
    "CourierError",
    "GatewaySendError",
    "NotFoundError",
    # Platform gateways (lazy loaded)
    "TelegramGateway",
]


def __getattr__(name: str):
    """Lazy import for platform gateways — avoids requiring optional deps at import time."""
    if name == "TelegramGateway":
        try:
            from agent_courier.gateway.telegram import TelegramGateway

            return TelegramGateway
        except ImportError:
            raise ImportError(
                "TelegramGateway requires python-telegram-bot. "
                "Install with: pip install agent-courier[telegram]"
            ) from None
    raise AttributeError(f"module 'agent_courier' has no attribute {name!r}")
