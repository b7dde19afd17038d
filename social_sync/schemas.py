"""
Pydantic schemas for request/response validation.

This module contains:
- Response models for connections, conversations and messages
- The state aggregate and mutation request/response models
- Small response models for auth, sync, webhook and health endpoints
"""

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from social_sync.utils import as_utc


class _TimestampedModel(BaseModel):
    """Base for ORM-backed models; datetimes are always rendered as UTC."""

    model_config = {"from_attributes": True}

    @field_validator("*", mode="after")
    @classmethod
    def _utc(cls, v: Any) -> Any:
        if isinstance(v, datetime):
            return as_utc(v)
        return v


# =============================================================================
# Entity Models
# =============================================================================

class ConnectionResponse(_TimestampedModel):
    """A platform connection. Tokens are never exposed."""
    connection_id: str
    platform: str
    external_account_id: Optional[str] = None
    display_name: Optional[str] = None
    status: str = Field(..., description="pending, active, expired (reconnect required) or revoked")
    token_expires_at: Optional[datetime] = None
    last_synced_at: Optional[datetime] = None
    created_at: datetime


class Participant(BaseModel):
    id: str
    name: Optional[str] = None


class ConversationResponse(_TimestampedModel):
    conversation_id: str
    connection_id: str
    external_thread_id: str
    participants: list[Participant] = Field(default_factory=list)
    snippet: Optional[str] = None
    last_message_at: Optional[datetime] = None
    unread_count: int = Field(0, ge=0)
    read_only: bool = False


class MessageResponse(_TimestampedModel):
    message_id: str
    conversation_id: str
    external_message_id: Optional[str] = None
    provisional_id: Optional[str] = None
    direction: str
    sender_id: Optional[str] = None
    body: Optional[str] = None
    attachments: Optional[list[dict[str, Any]]] = None
    sent_at: datetime
    delivery_state: str
    error: Optional[str] = None


# =============================================================================
# State Endpoint
# =============================================================================

class StateResponse(BaseModel):
    connections: list[ConnectionResponse] = Field(default_factory=list)
    conversations: list[ConversationResponse] = Field(default_factory=list)
    messages: list[MessageResponse] = Field(default_factory=list)


class MutationRequest(BaseModel):
    """
    Client-originated mutation.

    - mark_read: zero the unread count of a conversation
    - send_message: send ``body`` to a conversation
    """
    action: Literal["mark_read", "send_message"]
    conversation_id: str = Field(..., min_length=1)
    body: Optional[str] = Field(None, max_length=2000)

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"action": "send_message", "conversation_id": "conv_123", "body": "Hello"},
                {"action": "mark_read", "conversation_id": "conv_123"},
            ]
        }
    }


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: Optional[dict[str, Any]] = None


class MutationResponse(BaseModel):
    success: bool
    conversation: Optional[ConversationResponse] = None
    message: Optional[MessageResponse] = None
    error: Optional[ErrorDetail] = None


class ErrorResponse(BaseModel):
    success: bool = False
    error: ErrorDetail


# =============================================================================
# Auth, Sync, Webhook and Health
# =============================================================================

class AuthorizationStartResponse(BaseModel):
    authorization_url: str
    state: str


class SyncResponse(BaseModel):
    connection_id: str
    skipped: bool = False
    cancelled: bool = False
    pages: int = 0
    created: int = 0
    duplicates: int = 0
    failed: int = 0


class WebhookResponse(BaseModel):
    status: str = Field(default="received", description="Delivery acknowledged")


class HealthResponse(BaseModel):
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
