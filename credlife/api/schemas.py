from __future__ import annotations

from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(
        ...,
        description="Stable error code",
    )
    message: str
    details: Optional[Any] = None  # object, array, or null


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))
