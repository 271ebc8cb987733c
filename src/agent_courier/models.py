"""Core data models for agent-courier."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

Priority = Literal["low", "normal", "high"]

OTHER_INDEX = -1
"""Option index reported when the operator picks the free-text entry."""

OTHER_LABEL = "Other"

# ---------------------------------------------------------------------------
# Handler type aliases
# ---------------------------------------------------------------------------

SendFn = Callable[[str, Priority], Awaitable["SendResult"]]
"""(text, priority) → SendResult"""

EditFn = Callable[["MessageHandle", str], Awaitable["SendResult"]]
"""(handle, text) → SendResult"""

EventHandler = Callable[["ResponseEvent"], Awaitable[None]]
"""(event) → None"""

EventPredicate = Callable[["ResponseEvent"], bool]
"""(event) → whether the subscription wants this event"""


# ---------------------------------------------------------------------------
# Outbound messages
# ---------------------------------------------------------------------------


class MessageHandle(BaseModel):
    """A message previously sent by the gateway."""

    model_config = ConfigDict(frozen=True)

    chat_id: str
    message_id: int


class SendResult(BaseModel):
    """Result of a successful send or edit."""

    success: bool = True
    handle: MessageHandle

    @property
    def message_id(self) -> int:
        return self.handle.message_id


@dataclass(frozen=True)
class PendingMessage:
    """A notification waiting in the batch queue."""

    text: str
    priority: Priority
    enqueued_at: float


# ---------------------------------------------------------------------------
# Inbound events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ResponseEvent:
    """An operator action delivered by the gateway to subscribers.

    Attributes:
        kind: "callback" for a button press, "message" for plain text.
        chat_id: Chat the event came from.
        message_id: For callbacks, the message carrying the button; for
            text, the id of the operator's own message.
        option_index: Pressed option (``OTHER_INDEX`` for free text).
        text: Message text for ``kind="message"``.
        sender: Display name of the operator, when known.
    """

    kind: Literal["callback", "message"]
    chat_id: str
    message_id: int
    option_index: int | None = None
    text: str | None = None
    sender: str | None = None


# ---------------------------------------------------------------------------
# Approvals
# ---------------------------------------------------------------------------


class ApprovalOption(BaseModel):
    """One selectable answer of an approval request."""

    label: str = Field(min_length=1)
    description: str = ""


class ApprovalRequest(BaseModel):
    """An interactive question awaiting the operator's answer.

    ``id`` is derived from the gateway's message id, so it is unique for as
    long as the chat's message ids are.
    """

    id: str
    source: MessageHandle
    question: str
    header: str | None = None
    options: list[ApprovalOption]
    created_at: float
    resolved: bool = False


class CreateResult(BaseModel):
    """Returned by ``ApprovalCoordinator.create``."""

    success: bool = True
    id: str
    message_id: int


class ApprovalResult(BaseModel):
    """Outcome of waiting on an approval request.

    A timeout is a regular outcome: ``selected`` is None and
    ``timed_out`` is True.
    """

    selected: str | None = None
    custom_text: str | None = None
    timed_out: bool = False
    elapsed_seconds: float = 0.0


# ---------------------------------------------------------------------------
# Tool arguments
# ---------------------------------------------------------------------------


class SendMessageArgs(BaseModel):
    """Arguments of the ``send_message`` tool."""

    text: str = Field(min_length=1)
    priority: Priority = "normal"


class ApprovalRequestArgs(BaseModel):
    """Arguments of the ``send_approval_request`` tool."""

    question: str = Field(min_length=1)
    options: list[ApprovalOption] = Field(min_length=1)
    header: str | None = None


class PollResponseArgs(BaseModel):
    """Arguments of the ``poll_response`` tool."""

    approval_id: str = Field(min_length=1)
    timeout_seconds: float | None = Field(default=None, gt=0)


class BatchMessage(BaseModel):
    text: str = Field(min_length=1)
    priority: Priority = "normal"


class BatchNotificationsArgs(BaseModel):
    """Arguments of the ``batch_notifications`` tool."""

    messages: list[BatchMessage] = Field(min_length=1)


class InboundCommand(BaseModel):
    """A plain message the operator sent while the listener was active."""

    id: int
    text: str
    sender: str | None = None
    received_at: float
