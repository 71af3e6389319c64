"""
Pydantic models for channel events.

Every event published for a turn carries the interaction id (the id of the
assistant placeholder turn) so clients can route tokens to the right bubble.
A turn produces one status event, zero or more token events and exactly
one end event, in that order.
"""

from datetime import datetime, timezone
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BaseChannelEvent(BaseModel):
    """Base class for events relayed to a user's channel."""

    kind: str
    interaction_id: int
    payload: str
    timestamp: datetime = Field(default_factory=_utcnow)


class StatusEvent(BaseChannelEvent):
    """Progress notice shown before the first token."""

    kind: Literal["status"] = "status"


class TokenEvent(BaseChannelEvent):
    """One token of the answer."""

    kind: Literal["token"] = "token"


class EndEvent(BaseChannelEvent):
    """The turn is over; payload is the final persisted text."""

    kind: Literal["end"] = "end"


ChannelEvent = Annotated[
    Union[StatusEvent, TokenEvent, EndEvent],
    Field(discriminator="kind"),
]

channel_event_adapter = TypeAdapter(ChannelEvent)


def parse_event(data: dict) -> BaseChannelEvent:
    """Rebuild a ChannelEvent from its JSON form."""
    return channel_event_adapter.validate_python(data)
