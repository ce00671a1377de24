"""Operator-facing messaging API schemas."""

from pydantic import BaseModel


class OutboundMessageRequest(BaseModel):
    """Text message typed by an operator; presence of `to`/`message` is checked by the route."""

    to: str | None = None
    message: str | None = None
    type: str = "text"
