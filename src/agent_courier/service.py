"""Courier service — the agent-facing facade.

Wires configuration, rate limiter, gateway, batcher, approval coordinator
and command listener together, and exposes the operations an agent calls
(send a message, ask for approval, wait for the answer, batch
notifications, read operator commands, toggle AFK mode).

Typical usage::

    async with Courier.from_config_file() as courier:
        created = await courier.send_approval_request(
            "Deploy to production?",
            [{"label": "Yes", "description": "Ship it"}, {"label": "No"}],
        )
        result = await courier.poll_response(created.id, timeout_seconds=300)
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from agent_courier.afk import AFK_STATE_FILENAME, AfkState, format_duration
from agent_courier.approval import ApprovalCoordinator
from agent_courier.batching import MessageBatcher
from agent_courier.clock import SYSTEM_CLOCK, Clock
from agent_courier.config import CourierConfig, load_config
from agent_courier.gateway.base import ChatGateway
from agent_courier.listener import CommandListener
from agent_courier.logs import configure_logging
from agent_courier.models import (
    ApprovalOption,
    ApprovalRequestArgs,
    ApprovalResult,
    BatchNotificationsArgs,
    CreateResult,
    PollResponseArgs,
    Priority,
    SendMessageArgs,
    SendResult,
)
from agent_courier.ratelimit import RateLimiter

logger = logging.getLogger("agent_courier.service")


class Courier:
    """Agent-facing notification and approval service.

    Args:
        config: Validated configuration.
        gateway: Chat gateway to use. A ``TelegramGateway`` built from
            ``config`` is used if omitted.
        clock: Time source shared by every component.
    """

    def __init__(
        self,
        config: CourierConfig,
        *,
        gateway: ChatGateway | None = None,
        clock: Clock | None = None,
    ) -> None:
        self._config = config
        self._clock = clock or SYSTEM_CLOCK

        if gateway is None:
            from agent_courier.gateway.telegram import TelegramGateway

            limiter = RateLimiter(
                config.rate_limiting.messages_per_minute,
                config.rate_limiting.burst_size,
                clock=self._clock,
            )
            gateway = TelegramGateway(
                config.bot_token,
                config.chat_id,
                rate_limiter=limiter,
                retry_attempts=config.retry.attempts,
                backoff_seconds=config.retry.backoff_seconds,
                backoff_max_seconds=config.retry.backoff_max_seconds,
                clock=self._clock,
            )
        self._gateway = gateway

        self._batcher = MessageBatcher(
            gateway.send,
            gateway.edit,
            window_seconds=config.batch_window_seconds,
            max_queue_size=config.max_queue_size,
            stale_multiplier=config.stale_multiplier,
            clock=self._clock,
        )
        self._approvals = ApprovalCoordinator(
            gateway,
            default_timeout_seconds=config.timeout_seconds,
            retention_seconds=config.approvals.retention_hours * 3600,
            sweep_interval_seconds=config.approvals.sweep_interval_minutes * 60,
            max_pending=config.approvals.max_pending,
            clock=self._clock,
        )
        self._listener = CommandListener(gateway, config.chat_id)
        self._afk = AfkState(config.resolved_data_dir() / AFK_STATE_FILENAME)

    @classmethod
    def from_config_file(cls, path: str | Path | None = None, **kwargs: Any) -> Courier:
        """Load configuration, set up logging, and build a service.

        Raises:
            ConfigurationError: If the configuration is missing or invalid.
        """
        config = load_config(path)
        configure_logging(config.logging_level, config.resolved_data_dir())
        return cls(config, **kwargs)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def config(self) -> CourierConfig:
        return self._config

    @property
    def gateway(self) -> ChatGateway:
        return self._gateway

    @property
    def batcher(self) -> MessageBatcher:
        return self._batcher

    @property
    def approvals(self) -> ApprovalCoordinator:
        return self._approvals

    @property
    def listener(self) -> CommandListener:
        return self._listener

    @property
    def afk(self) -> AfkState:
        return self._afk

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Connect the gateway, start the approval sweeper, restore AFK mode."""
        await self._gateway.start()
        self._approvals.start_sweeper()
        if self._afk.load():
            self._listener.start()
            logger.info("Restored AFK mode from previous session")
        logger.info("Courier started")

    async def stop(self) -> None:
        """Flush pending notifications, end waits, then disconnect."""
        await self._batcher.close()
        await self._approvals.shutdown()
        if self._listener.listening:
            self._listener.stop()
        await self._gateway.stop()
        logger.info("Courier stopped")

    async def __aenter__(self) -> Courier:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def send_message(self, text: str, priority: Priority = "normal") -> SendResult:
        """Send one message right away (rate limited, retried)."""
        args = SendMessageArgs(text=text, priority=priority)
        return await self._gateway.send(args.text, args.priority)

    async def send_approval_request(
        self,
        question: str,
        options: Sequence[ApprovalOption | dict],
        header: str | None = None,
    ) -> CreateResult:
        """Ask the operator a question with selectable answers."""
        args = ApprovalRequestArgs.model_validate(
            {"question": question, "options": list(options), "header": header}
        )
        return await self._approvals.create(args.question, args.options, args.header)

    async def poll_response(
        self, approval_id: str, timeout_seconds: float | None = None
    ) -> ApprovalResult:
        """Wait for the answer to an approval request."""
        args = PollResponseArgs(approval_id=approval_id, timeout_seconds=timeout_seconds)
        return await self._approvals.wait(args.approval_id, args.timeout_seconds)

    async def batch_notifications(self, messages: Sequence[dict]) -> dict:
        """Queue several notifications; any high-priority one flushes the batch."""
        args = BatchNotificationsArgs.model_validate({"messages": list(messages)})
        leftovers: list[str] = []
        for msg in args.messages:
            leftover = await self._batcher.add(msg.text, msg.priority)
            if leftover:
                leftovers.append(leftover)

        if any(msg.priority == "high" for msg in args.messages):
            leftover = await self._batcher.flush()
            if leftover:
                leftovers.append(leftover)

        for text in leftovers:
            await self._gateway.send(text, "high")
        return {"success": True, "batched": len(args.messages)}

    async def start_listener(self) -> dict:
        started = self._listener.start()
        return {"success": True, "listening": True, "already_active": not started}

    async def stop_listener(self) -> dict:
        stopped = self._listener.stop()
        return {"success": True, "listening": False, "already_stopped": not stopped}

    async def get_pending_commands(self, limit: int = 10) -> dict:
        commands, remaining = self._listener.pending(limit)
        return {
            "commands": [c.model_dump() for c in commands],
            "remaining": remaining,
        }

    async def get_listener_status(self) -> dict:
        return self._listener.status()

    async def enable_afk(self) -> dict:
        """Enter AFK mode: persist it, start the listener, tell the operator."""
        self._afk.enable()
        self._listener.start()
        await self._gateway.send("🤖 <b>AFK Enabled</b> | The agent will notify you here", "high")
        logger.info("AFK mode enabled")
        return {"success": True, "afk_mode": True, "listener_started": True}

    async def disable_afk(self) -> dict:
        """Leave AFK mode and report how long it lasted."""
        elapsed = self._afk.disable()
        duration = format_duration(elapsed) if elapsed is not None else "Unknown"
        self._listener.stop()
        await self._gateway.send(
            f"🖥️ <b>AFK Disabled</b> | Duration of Session: {duration}", "high"
        )
        logger.info("AFK mode disabled (duration=%s)", duration)
        return {
            "success": True,
            "afk_mode": False,
            "duration": duration,
            "listener_stopped": True,
        }

    # ------------------------------------------------------------------
    # Tool dispatch
    # ------------------------------------------------------------------

    async def call_tool(self, name: str, arguments: dict | None = None) -> dict:
        """Run an operation by tool name.

        Failures are returned as ``{"error": message}`` rather than raised.
        """
        arguments = arguments or {}
        try:
            result = await self._call_tool(name, arguments)
        except Exception as exc:
            logger.error("Tool call failed: %s: %s", name, exc)
            return {"error": str(exc)}
        if isinstance(result, BaseModel):
            return result.model_dump()
        return result

    async def _call_tool(self, name: str, arguments: dict) -> Any:
        if name == "send_message":
            args = SendMessageArgs.model_validate(arguments)
            result = await self.send_message(args.text, args.priority)
            return {"success": result.success, "message_id": result.message_id}
        if name == "send_approval_request":
            args = ApprovalRequestArgs.model_validate(arguments)
            result = await self.send_approval_request(args.question, args.options, args.header)
            return {"success": result.success, "message_id": result.message_id, "approval_id": result.id}
        if name == "poll_response":
            args = PollResponseArgs.model_validate(arguments)
            return await self.poll_response(args.approval_id, args.timeout_seconds)
        if name == "batch_notifications":
            return await self.batch_notifications(arguments.get("messages") or [])
        if name == "start_listener":
            return await self.start_listener()
        if name == "stop_listener":
            return await self.stop_listener()
        if name == "get_pending_commands":
            return await self.get_pending_commands(int(arguments.get("limit", 10)))
        if name == "get_listener_status":
            return await self.get_listener_status()
        if name in ("enable_afk", "enable_afk_mode"):
            return await self.enable_afk()
        if name in ("disable_afk", "disable_afk_mode"):
            return await self.disable_afk()
        raise ValueError(f"Unknown tool: {name}")
