"""Chat gateways: the transport between agent-courier and a chat platform."""

from agent_courier.gateway.base import ChatGateway

__all__ = ["ChatGateway", "TelegramGateway"]


def __getattr__(name: str):
    """Lazy import for the Telegram gateway — avoids requiring python-telegram-bot at import time."""
    if name == "TelegramGateway":
        from agent_courier.gateway.telegram import TelegramGateway

        return TelegramGateway
    raise AttributeError(f"module 'agent_courier.gateway' has no attribute {name!r}")
