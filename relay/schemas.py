"""
Pydantic schemas for request/response validation.

This module contains:
- The normalized inbound message extracted from WhatsApp webhook events
- Response models for API responses
"""

from typing import Literal, Optional

from pydantic import BaseModel, Field


# =============================================================================
# Inbound Message Model
# =============================================================================

class IncomingMessage(BaseModel):
    """
    Normalized view of ``entry[0].changes[0].value.messages[0]``.

    Built per event by the payload extractor and discarded after processing.
    """
    message_id: str = Field(
        ...,
        min_length=1,
        description="Provider-assigned message identifier (wamid)"
    )
    # Note: 'from' is a reserved word in Python, so we use alias
    from_number: str = Field(
        ...,
        alias="from",
        min_length=1,
        description="Sender WhatsApp address"
    )
    type: str = Field(
        ...,
        min_length=1,
        description="Message kind (text, image, audio, ...)"
    )
    text: Optional[str] = Field(
        None,
        description="Message body, only present for text messages"
    )
    timestamp: Optional[str] = Field(
        None,
        description="Seconds since epoch as supplied by the provider"
    )

    model_config = {
        "populate_by_name": True,  # Allow both 'from' and 'from_number'
        "frozen": True,
    }

    @property
    def is_text(self) -> bool:
        return self.type == "text" and bool(self.text and self.text.strip())


# =============================================================================
# Pipeline Outcome Models
# =============================================================================

class StageOutcome(BaseModel):
    """Result of one background pipeline stage (generate, record, send)."""
    stage: str
    status: Literal["ok", "skipped", "failed"]
    error: Optional[str] = None

    model_config = {"frozen": True}

    @property
    def ok(self) -> bool:
        return self.status == "ok"


# =============================================================================
# Pydantic Response Models
# =============================================================================

class WebhookResponse(BaseModel):
    """Acknowledgement returned for every inbound webhook event."""
    status: str = Field(default="ok", description="Operation status")


class AskResponse(BaseModel):
    """Response model for a successful POST /ask."""
    ok: bool = Field(default=True)
    reply: str = Field(..., description="Generated reply text")


class ErrorResponse(BaseModel):
    """Response model for error responses on synchronous endpoints."""
    ok: bool = Field(default=False)
    error: str = Field(..., description="Error description")


class TestInsertResponse(BaseModel):
    """Response model for the GET /test-insert diagnostic."""
    ok: bool = Field(..., description="Whether the synthetic row was written")
    message_id: Optional[str] = Field(None, description="Id of the synthetic row")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
