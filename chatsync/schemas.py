"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for incoming data validation
- Response models for API responses

Field names follow the dashboard's camelCase JSON; aliases map them onto
snake_case attributes.
"""

from typing import Optional

from pydantic import BaseModel, Field, field_validator


class _Request(BaseModel):
    model_config = {"populate_by_name": True}


class _Response(BaseModel):
    model_config = {"populate_by_name": True, "from_attributes": True}


def _required_text(value: str, field_name: str) -> str:
    if not value or not value.strip():
        raise ValueError(f"{field_name} is required")
    return value.strip()


# =============================================================================
# Pydantic Request Models
# =============================================================================

class SessionNameRequest(_Request):
    """Body for operations addressed to one session."""
    session_name: str = Field(..., alias="sessionName", description="Unique session name")

    @field_validator("session_name")
    @classmethod
    def validate_session_name(cls, v: str) -> str:
        return _required_text(v, "sessionName")


class StartSessionRequest(SessionNameRequest):
    owner_id: Optional[str] = Field(None, alias="ownerId", description="Owning dashboard user")

    model_config = {
        "populate_by_name": True,
        "json_schema_extra": {"examples": [{"sessionName": "905551234567", "ownerId": "u-1"}]},
    }


class FetchHistoryRequest(SessionNameRequest):
    contact_id: str = Field(..., alias="contactId", description="Contact phone number (any format)")
    limit: Optional[int] = Field(None, ge=1, le=500, description="Maximum messages to return")
    before_id: Optional[str] = Field(None, alias="beforeId", description="Return messages older than this id")


class SendMessageRequest(SessionNameRequest):
    target_number: str = Field(..., alias="targetNumber", description="Recipient phone number")
    text: str = Field(..., min_length=1, max_length=4096, description="Message text")


class SyncSelectedRequest(SessionNameRequest):
    contact_ids: list[str] = Field(default_factory=list, alias="contactIds")
    per_chat_limit: Optional[int] = Field(None, alias="perChatLimit", ge=1, le=500)


class ContactUpdates(_Request):
    display_name: Optional[str] = Field(None, alias="displayName")
    email: Optional[str] = None
    notes: Optional[str] = None
    tags: Optional[list[str]] = None

    @field_validator("tags")
    @classmethod
    def clean_tags(cls, v: Optional[list[str]]) -> Optional[list[str]]:
        if v is None:
            return v
        return [tag.strip() for tag in v if tag and tag.strip()]


class UpdateContactRequest(_Request):
    session_id: str = Field(..., alias="sessionId", description="Session name")
    contact_id: str = Field(..., alias="contactId", description="Contact phone number")
    updates: ContactUpdates


class QuickReplyCreateRequest(_Request):
    title: str = Field(..., min_length=1, max_length=200)
    message: str = Field(..., min_length=1, max_length=4096)


class QuickReplyDeleteRequest(_Request):
    id: int


# =============================================================================
# Pydantic Response Models
# =============================================================================

class SuccessResponse(_Response):
    success: bool = True


class ErrorResponse(_Response):
    """Body of every failed request."""
    success: bool = False
    error: str = Field(..., description="Human-readable reason")


class StartSessionResponse(SuccessResponse):
    session_id: str = Field(..., serialization_alias="sessionId")
    status: Optional[str] = None
    pairing: Optional[str] = Field(None, description="Pairing code image as a data URL")


class MessageResponse(_Response):
    external_id: str = Field(..., serialization_alias="id")
    direction: str
    type: str
    body: Optional[str] = None
    timestamp: int


class FetchHistoryResponse(SuccessResponse):
    messages: list[MessageResponse] = Field(default_factory=list)


class ConversationResponse(_Response):
    id: str
    phone_number: str = Field(..., serialization_alias="phoneNumber")
    display_name: Optional[str] = Field(None, serialization_alias="displayName")
    unread_count: int = Field(0, serialization_alias="unreadCount")
    last_activity: Optional[int] = Field(None, serialization_alias="lastActivityTimestamp")


class ConversationsResponse(SuccessResponse):
    chats: list[ConversationResponse] = Field(default_factory=list)


class SessionResponse(_Response):
    name: str
    owner_id: Optional[str] = Field(None, serialization_alias="ownerId")
    status: str
    pairing_payload: Optional[str] = Field(None, serialization_alias="pairing")
    created_at: str = Field(..., serialization_alias="createdAt")


class SessionsResponse(SuccessResponse):
    sessions: list[SessionResponse] = Field(default_factory=list)


class QuickReplyResponse(_Response):
    id: int
    title: str
    message: str


class QuickRepliesResponse(SuccessResponse):
    data: list[QuickReplyResponse] = Field(default_factory=list)


class QuickReplyCreatedResponse(SuccessResponse):
    data: QuickReplyResponse


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
