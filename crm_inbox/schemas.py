"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for the webhook and the bulk inbox operations
- The merged inbox row (DisplayMessage) and list/stats responses
- Result models for mark-read, bulk-read, bulk-delete and cleanup
"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


# =============================================================================
# Pydantic Request Models
# =============================================================================

class WebhookRequest(BaseModel):
    """
    A message handed over by the SMS/email transport after send or receipt.

    sent_by present means the message went out from an operator; absent means
    it was received from the lead.
    """
    provider_message_id: str = Field(
        ...,
        min_length=1,
        description="Provider's message identifier, unique per channel"
    )
    channel: Literal["sms", "email"] = Field(..., description="Communication channel")
    entity_id: Optional[str] = Field(None, description="Lead the message belongs to, if matched")
    sent_by: Optional[str] = Field(None, description="Operator user id for outbound messages")
    sent_by_name: Optional[str] = Field(None, description="Operator display name")
    content: Optional[str] = Field(None, max_length=65536, description="Message text")
    subject: Optional[str] = Field(None, max_length=998, description="Email subject")
    email_body: Optional[str] = Field(None, description="Full email body")
    sent_at: Optional[str] = Field(
        None,
        description="Event time in ISO-8601 UTC (e.g., 2024-01-01T10:00:00Z)"
    )

    @field_validator("sent_at")
    @classmethod
    def validate_iso8601(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        try:
            datetime.fromisoformat(v.replace("Z", "+00:00"))
        except ValueError:
            raise ValueError("sent_at must be a valid ISO-8601 timestamp (e.g., 2024-01-01T10:00:00Z)")
        return v

    @model_validator(mode="after")
    def require_some_content(self):
        if not (self.content or self.subject or self.email_body):
            raise ValueError("one of content, subject or email_body is required")
        return self

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "provider_message_id": "SM8f2c",
                    "channel": "sms",
                    "entity_id": "lead-1",
                    "content": "Hello",
                    "sent_at": "2024-01-01T10:00:00Z",
                }
            ]
        }
    }


class ReferencesRequest(BaseModel):
    """Body of the bulk read and bulk delete endpoints."""
    message_ids: list[str] = Field(
        ...,
        alias="messageIds",
        description="Inbox row identifiers, as returned in DisplayMessage.id"
    )

    model_config = {"populate_by_name": True}


# =============================================================================
# Pydantic Response Models
# =============================================================================

class WebhookResponse(BaseModel):
    status: str = Field(default="ok", description="Operation status")
    duplicate: bool = Field(default=False, description="Provider message was already stored")


class ErrorResponse(BaseModel):
    detail: str = Field(..., description="Error description")
    code: Optional[str] = Field(None, description="Machine-readable error code")
    retryable: bool = Field(default=False, description="Whether retrying may succeed")


class DisplayMessage(BaseModel):
    """One row of the merged inbox."""
    id: str = Field(..., description="Reference for read/delete: message id or entityId_timestamp")
    message_id: Optional[str] = Field(None, description="messages-table id when the row has one")
    entity_id: str
    entity_name: Optional[str] = None
    entity_phone: Optional[str] = None
    entity_email: Optional[str] = None
    entity_status: Optional[str] = None
    assigned_to: Optional[str] = None
    channel: Literal["sms", "email"]
    direction: Literal["sent", "received"]
    action: str
    content: str
    timestamp: str
    performed_by: Optional[str] = None
    performed_by_name: Optional[str] = None
    is_read: bool
    source: Literal["message", "history"]


class InboxStats(BaseModel):
    total_messages: int = Field(..., ge=0)
    sms_count: int = Field(..., ge=0)
    email_count: int = Field(..., ge=0)
    unread_count: int = Field(..., ge=0)
    sent_count: int = Field(..., ge=0)
    received_count: int = Field(..., ge=0)


class InboxResponse(BaseModel):
    """Response model for GET /messages."""
    messages: list[DisplayMessage] = Field(default_factory=list)
    stats: InboxStats
    user_role: Optional[str] = None
    user_id: Optional[str] = None


class MarkReadResponse(BaseModel):
    success: bool = True
    reference: str
    entity_id: Optional[str] = None
    source: Literal["message", "history"]
    read: bool = True


class ReferenceResult(BaseModel):
    reference: str
    success: bool
    error: Optional[str] = None


class BulkReadResponse(BaseModel):
    success: bool = True
    message: str
    results: list[ReferenceResult] = Field(default_factory=list)


class BulkDeleteResponse(BaseModel):
    success: bool = True
    deleted: int = Field(..., ge=0)
    results: list[ReferenceResult] = Field(default_factory=list)


class CleanupResponse(BaseModel):
    success: bool = True
    total_messages: int = Field(..., ge=0)
    orphaned_messages: int = Field(..., ge=0)
    deleted_count: int = Field(..., ge=0)


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
