from typing import Any

from pydantic import BaseModel, Field


class ChatMessageRequest(BaseModel):
    """Free-text message from the channel adapter."""
    message: str = Field(..., min_length=1, max_length=2000)
    customer_phone: str | None = Field(None, max_length=20)


class TurnRequest(BaseModel):
    """A turn whose fields were already extracted upstream."""
    extraction: dict[str, Any] = Field(default_factory=dict)
    message: str | None = Field(None, max_length=2000)
    customer_phone: str | None = Field(None, max_length=20)
