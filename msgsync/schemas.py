"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for incoming data validation
- Response models for API responses
- The normalized inbound record produced from provider payloads
"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator


# =============================================================================
# Normalized Provider Records
# =============================================================================

class InboundRecord(BaseModel):
    """One message from the provider inbox after normalization."""
    sender: str = Field(..., description="Counterparty phone number or contact")
    body: str = Field(..., description="Message text (may be empty)")
    time: datetime = Field(..., description="Provider-reported time, UTC")


# =============================================================================
# Pydantic Request Models
# =============================================================================

class ReceivedMessageCreate(BaseModel):
    """Manual insert of a received message."""
    sender: str = Field(..., min_length=1, description="Sender phone number")
    message: str = Field(..., min_length=1, description="Message text")
    ts: Optional[datetime] = Field(
        None,
        description="Message time; defaults to server time"
    )


class SentMessageCreate(BaseModel):
    """Record of a message already sent through some other channel."""
    recipient: str = Field(..., min_length=1, description="Recipient phone number")
    message: str = Field(..., min_length=1, description="Message text")
    status: Literal["sent", "delivered", "failed"] = Field(
        "sent",
        description="Delivery status"
    )


class SendMessageRequest(BaseModel):
    """
    Outbound message to send through the provider.

    Validates:
    - recipient: non-blank
    - message: non-blank
    - link: optional media link
    """
    recipient: str = Field(..., min_length=1, description="Recipient phone number")
    message: str = Field(..., min_length=1, description="Message text")
    link: Optional[str] = Field(None, description="Optional media link")

    @field_validator("recipient", "message")
    @classmethod
    def not_blank(cls, v: str, info) -> str:
        if not v.strip():
            raise ValueError(f"{info.field_name} must not be blank")
        return v.strip()

    @field_validator("link")
    @classmethod
    def empty_link_is_none(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            return None
        return v.strip() if v else v


class ProviderSettingsUpdate(BaseModel):
    token: Optional[str] = Field(None, description="Provider API token")
    phone_number: Optional[str] = Field(None, description="Originating phone number")


# =============================================================================
# Pydantic Response Models
# =============================================================================

class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class ReceivedMessageResponse(BaseModel):
    id: str = Field(..., description="Message identifier")
    user_id: str = Field(..., description="Owner of the inbox")
    sender: str = Field(..., description="Sender phone number")
    message: str = Field(..., description="Message content")
    status: str = Field(..., description="unread or read")
    ts: str = Field(..., description="Message timestamp")
    created_at: str = Field(..., description="Server insertion time")

    model_config = {"from_attributes": True}


class SentMessageResponse(BaseModel):
    id: str = Field(..., description="Message identifier")
    user_id: str = Field(..., description="Sending user")
    recipient: str = Field(..., description="Recipient phone number")
    message: str = Field(..., description="Message content")
    status: str = Field(..., description="sent, delivered or failed")
    ts: str = Field(..., description="Message timestamp")
    created_at: str = Field(..., description="Server insertion time")

    model_config = {"from_attributes": True}


class SendMessageResponse(BaseModel):
    """
    Outcome of POST /messages/send.

    saved is false when the provider accepted the message but storing the
    sent record failed; record is then null.
    """
    status: str = Field(..., description="Delivery status")
    saved: bool = Field(..., description="Sent record was stored")
    record: Optional[SentMessageResponse] = Field(None, description="Stored sent message")


class MarkAllReadResponse(BaseModel):
    updated: int = Field(..., ge=0, description="Messages changed from unread to read")


class ProviderSettingsResponse(BaseModel):
    """Provider settings with the token masked."""
    token: Optional[str] = Field(None, description="Masked provider token")
    phone_number: Optional[str] = Field(None, description="Originating phone number")
    configured: bool = Field(..., description="Both token and phone number are set")
    updated_at: Optional[str] = Field(None, description="Last update time")


class BackfillSummary(BaseModel):
    """Outcome of a session's one-shot backfill."""
    pages_fetched: int = Field(..., ge=0)
    records_seen: int = Field(..., ge=0)
    new_messages: int = Field(..., ge=0)
    completed: bool = Field(..., description="False if a page fetch failed")
    finished_at: Optional[str] = None


class PollSummary(BaseModel):
    """Outcome of a single poll tick."""
    outcome: str = Field(..., description="ok, skipped or failed")
    records_seen: int = Field(0, ge=0)
    new_messages: int = Field(0, ge=0)


class SyncStatusResponse(BaseModel):
    user_id: str
    running: bool
    ticks: int = Field(0, ge=0)
    skipped_ticks: int = Field(0, ge=0)
    last_poll: Optional[PollSummary] = None
    backfill: Optional[BackfillSummary] = None


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
