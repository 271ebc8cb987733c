"""Telegram gateway implementation.

Uses python-telegram-bot to send HTML messages to a single chat, present
approval options as inline keyboard buttons, and turn button presses and
text replies into ``ResponseEvent`` objects for subscribers.
"""

from __future__ import annotations

import html as html_mod
import logging
from typing import Any

from agent_courier.clock import Clock
from agent_courier.gateway.base import RECEIPT_REACTION, ChatGateway
from agent_courier.models import OTHER_INDEX, ApprovalOption, MessageHandle, ResponseEvent
from agent_courier.ratelimit import RateLimiter

logger = logging.getLogger("agent_courier.telegram")

_MESSAGE_LIMIT = 4096
_CALLBACK_PREFIX = "approval:"
_OTHER_BUTTON = "💬 Other (custom text)"
_SELECTED_MARK = "✅ "
# Option labels are kept for this many recent approval messages
_LABEL_CACHE_SIZE = 100


class TelegramGateway(ChatGateway):
    """Telegram gateway bound to one chat.

    Args:
        token: Telegram bot API token.
        chat_id: The only chat messages are sent to and accepted from.
        rate_limiter: Shared outbound rate limiter.
        retry_attempts: Attempts per outbound call.
        backoff_seconds: Base backoff delay.
        backoff_max_seconds: Maximum single backoff delay.
        receipt_reaction: Emoji added to sent messages, or None.
        clock: Time source for backoff sleeps.
    """

    def __init__(
        self,
        token: str,
        chat_id: str | int,
        *,
        rate_limiter: RateLimiter | None = None,
        retry_attempts: int = 3,
        backoff_seconds: float = 1.0,
        backoff_max_seconds: float = 10.0,
        receipt_reaction: str | None = RECEIPT_REACTION,
        clock: Clock | None = None,
    ) -> None:
        super().__init__(
            rate_limiter=rate_limiter,
            retry_attempts=retry_attempts,
            backoff_seconds=backoff_seconds,
            backoff_max_seconds=backoff_max_seconds,
            receipt_reaction=receipt_reaction,
            clock=clock,
        )
        self._token = token
        self._chat_id = str(chat_id)
        self._app: Any = None
        # message_id -> option labels, used for the callback toast
        self._option_labels: dict[int, list[str]] = {}

    @property
    def chat_id(self) -> str:
        return self._chat_id

    # ------------------------------------------------------------------
    # Platform lifecycle
    # ------------------------------------------------------------------

    async def _platform_start(self) -> None:
        from telegram.ext import Application, CallbackQueryHandler, MessageHandler, filters

        self._app = Application.builder().token(self._token).build()

        self._app.add_handler(
            CallbackQueryHandler(self._handle_callback_query, pattern=rf"^{_CALLBACK_PREFIX}")
        )
        self._app.add_handler(
            MessageHandler(filters.TEXT & ~filters.COMMAND, self._handle_message)
        )

        await self._app.initialize()
        await self._app.start()
        await self._app.updater.start_polling()
        logger.info(
            "Telegram gateway started (chat=%s, bot=%s)",
            self._chat_id,
            getattr(self._app.bot, "username", None),
        )

    async def _platform_stop(self) -> None:
        if self._app:
            if self._app.updater.running:
                await self._app.updater.stop()
            await self._app.stop()
            await self._app.shutdown()
            self._app = None
        logger.info("Telegram gateway stopped")

    # ------------------------------------------------------------------
    # Platform outbound
    # ------------------------------------------------------------------

    def _bot(self) -> Any:
        if not self._app:
            raise RuntimeError("Telegram gateway not started")
        return self._app.bot

    def _handle_for(self, message: Any) -> MessageHandle:
        return MessageHandle(chat_id=self._chat_id, message_id=message.message_id)

    async def _platform_send(self, text: str) -> MessageHandle:
        from telegram.error import BadRequest

        bot = self._bot()
        text = text[:_MESSAGE_LIMIT]
        try:
            message = await bot.send_message(chat_id=self._chat_id, text=text, parse_mode="HTML")
        except BadRequest as exc:
            if "parse" not in str(exc).lower():
                raise
            # Fallback to plain text
            logger.info("HTML rejected by Telegram, sending as plain text: %s", exc)
            message = await bot.send_message(chat_id=self._chat_id, text=text)
        return self._handle_for(message)

    async def _platform_edit(self, handle: MessageHandle, text: str) -> None:
        from telegram.error import BadRequest

        bot = self._bot()
        text = text[:_MESSAGE_LIMIT]
        try:
            await bot.edit_message_text(
                text=text,
                chat_id=handle.chat_id,
                message_id=handle.message_id,
                parse_mode="HTML",
            )
        except BadRequest as exc:
            if "parse" not in str(exc).lower():
                raise
            await bot.edit_message_text(
                text=text, chat_id=handle.chat_id, message_id=handle.message_id
            )

    async def _platform_send_interactive(
        self, header: str, question: str, options: list[ApprovalOption]
    ) -> MessageHandle:
        lines = [
            f"🤔 <b>{html_mod.escape(header)}</b>",
            "",
            html_mod.escape(question),
            "",
            "<i>Options:</i>",
        ]
        for idx, opt in enumerate(options, start=1):
            line = f"{idx}. <b>{html_mod.escape(opt.label)}</b>"
            if opt.description:
                line += f": {html_mod.escape(opt.description)}"
            lines.append(line)

        message = await self._bot().send_message(
            chat_id=self._chat_id,
            text="\n".join(lines)[:_MESSAGE_LIMIT],
            parse_mode="HTML",
            reply_markup=self._build_keyboard(options),
        )
        self._remember_labels(message.message_id, options)
        return self._handle_for(message)

    def _remember_labels(self, message_id: int, options: list[ApprovalOption]) -> None:
        self._option_labels[message_id] = [opt.label for opt in options]
        while len(self._option_labels) > _LABEL_CACHE_SIZE:
            del self._option_labels[next(iter(self._option_labels))]

    def _selected_label(self, message_id: int, index: int) -> str | None:
        if index == OTHER_INDEX:
            return "Other"
        labels = self._option_labels.get(message_id)
        if labels is None or not 0 <= index < len(labels):
            return None
        return labels[index]

    async def _platform_react(self, handle: MessageHandle, emoji: str) -> None:
        await self._bot().set_message_reaction(
            chat_id=handle.chat_id, message_id=handle.message_id, reaction=emoji
        )

    async def _platform_mark_selected(
        self, handle: MessageHandle, options: list[ApprovalOption], index: int
    ) -> None:
        await self._bot().edit_message_reply_markup(
            chat_id=handle.chat_id,
            message_id=handle.message_id,
            reply_markup=self._build_keyboard(options, selected=index),
        )

    @staticmethod
    def _build_keyboard(options: list[ApprovalOption], selected: int | None = None) -> Any:
        """Two option buttons per row, then a full-width "Other" button."""
        from telegram import InlineKeyboardButton, InlineKeyboardMarkup

        rows: list[list] = []
        current: list = []
        for idx, opt in enumerate(options):
            label = f"{_SELECTED_MARK}{opt.label}" if idx == selected else opt.label
            current.append(InlineKeyboardButton(label, callback_data=f"{_CALLBACK_PREFIX}{idx}"))
            if len(current) == 2:
                rows.append(current)
                current = []
        if current:
            rows.append(current)

        other = f"{_SELECTED_MARK}{_OTHER_BUTTON}" if selected == OTHER_INDEX else _OTHER_BUTTON
        rows.append(
            [InlineKeyboardButton(other, callback_data=f"{_CALLBACK_PREFIX}{OTHER_INDEX}")]
        )
        return InlineKeyboardMarkup(rows)

    def _is_transient(self, exc: BaseException) -> bool:
        from telegram.error import BadRequest, Forbidden, InvalidToken

        return isinstance(exc, Exception) and not isinstance(
            exc, (BadRequest, Forbidden, InvalidToken)
        )

    # ------------------------------------------------------------------
    # Telegram event handlers
    # ------------------------------------------------------------------

    @staticmethod
    def _display_name(user: Any) -> str:
        if not user:
            return "unknown"
        if user.username:
            return f"@{user.username}"
        parts = [user.first_name or "", user.last_name or ""]
        name = " ".join(p for p in parts if p).strip()
        return name or "unknown"

    async def _handle_message(self, update: Any, context: Any) -> None:
        """Handle incoming text messages."""
        message = update.message
        if not message or not message.text:
            return

        chat_id = str(message.chat_id)
        if chat_id != self._chat_id:
            logger.warning("Ignoring message from unauthorized chat (chat_id=%s)", chat_id)
            return

        # Ignore messages from the bot itself
        user = message.from_user
        if user is not None and self._app is not None and user.id == self._app.bot.id:
            return

        await self._dispatch_event(
            ResponseEvent(
                kind="message",
                chat_id=chat_id,
                message_id=message.message_id,
                text=message.text,
                sender=self._display_name(user),
            )
        )

    @staticmethod
    async def _answer(query: Any, text: str | None) -> None:
        """Acknowledge a button press, with a toast when there is text."""
        try:
            if text:
                await query.answer(text=text)
            else:
                await query.answer()
        except Exception as exc:
            logger.info("Could not answer callback query: %s", exc)

    async def _handle_callback_query(self, update: Any, context: Any) -> None:
        """Handle approval button presses."""
        query = update.callback_query
        if not query or not query.message:
            return

        data = query.data or ""
        try:
            if not data.startswith(_CALLBACK_PREFIX):
                raise ValueError(data)
            index = int(data[len(_CALLBACK_PREFIX) :])
        except ValueError:
            logger.error("Invalid callback data: %r", data)
            await self._answer(query, "Invalid response format")
            return

        label = self._selected_label(query.message.message_id, index)
        await self._answer(query, f"Selected: {label}" if label else None)

        chat_id = str(query.message.chat_id)
        if chat_id != self._chat_id:
            logger.warning("Ignoring callback from unauthorized chat (chat_id=%s)", chat_id)
            return

        await self._dispatch_event(
            ResponseEvent(
                kind="callback",
                chat_id=chat_id,
                message_id=query.message.message_id,
                option_index=index,
                sender=self._display_name(query.from_user),
            )
        )
