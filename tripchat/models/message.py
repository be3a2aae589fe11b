"""Pydantic model for chat messages."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic import ValidationError as PydanticValidationError

from tripchat.errors import TransportError

MESSAGES_TABLE = "messages"


class Message(BaseModel):
    """A single chat line within a booking's chat session."""

    model_config = ConfigDict(frozen=True)

    id: int
    booking_id: str
    sender_id: str
    content: str
    created_at: datetime
    hidden_by: tuple[str, ...] = ()

    @field_validator("booking_id", mode="before")
    @classmethod
    def _booking_id_str(cls, value: Any) -> Any:
        return str(value) if value is not None else value

    @field_validator("hidden_by", mode="before")
    @classmethod
    def _null_hidden_by(cls, value: Any) -> Any:
        # The store returns NULL for rows nobody has hidden yet
        return () if value is None else value

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "Message":
        try:
            return cls.model_validate(row)
        except PydanticValidationError as exc:
            raise TransportError(
                "Received an unexpected message from the server",
                detail=str(exc),
            ) from exc

    def is_hidden_for(self, viewer_id: str) -> bool:
        return viewer_id in self.hidden_by

    def visible_to(self, viewer_id: str, watermark: Optional[datetime] = None) -> bool:
        """Visible iff created after the viewer's watermark and not hidden by them."""
        if watermark is not None and self.created_at <= watermark:
            return False
        return not self.is_hidden_for(viewer_id)
