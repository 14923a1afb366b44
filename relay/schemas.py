"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for incoming JSON bodies
- Response models for API responses

Field names are snake_case in Python and camelCase on the wire.
"""

from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from relay.models import MemberRecord


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# Request Models
# =============================================================================

class VerifyCodeRequest(ApiModel):
    code: Optional[str] = None


class CheckNameRequest(ApiModel):
    name: Optional[str] = None


class SubscribeRequest(ApiModel):
    """
    Self-service join.

    - subscription: browser PushSubscription JSON, stored opaque (optional)
    - code: group or admin code; the admin code makes the new member an admin
    - phone: optional, normalized to E.164
    """
    subscription: Optional[Any] = None
    name: Optional[str] = None
    code: Optional[str] = None
    phone: Optional[str] = None


class LoginRequest(ApiModel):
    name: Optional[str] = None
    code: Optional[str] = None


class AddMemberRequest(ApiModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    is_admin: Optional[bool] = False


class UpdateMemberRequest(ApiModel):
    """Partial update; only fields present in the body are applied."""
    name: Optional[str] = None
    phone: Optional[str] = None
    is_admin: Optional[bool] = None


class SendRequest(ApiModel):
    message: Optional[str] = None
    admin_code: Optional[str] = None
    sender_name: Optional[str] = None


# =============================================================================
# Response Models
# =============================================================================

class ErrorResponse(BaseModel):
    """Body of every error response."""
    error: str = Field(..., description="Error description")


class SuccessResponse(BaseModel):
    success: bool = True


class PublicKeyResponse(ApiModel):
    public_key: str


class VerifyCodeResponse(ApiModel):
    valid: bool
    is_admin: Optional[bool] = None


class CheckNameResponse(ApiModel):
    available: bool
    error: Optional[str] = None


class SubscribeResponse(ApiModel):
    success: bool = True
    id: str
    is_admin: bool


class LoginResponse(ApiModel):
    success: bool = True
    id: str
    name: str
    is_admin: bool
    phone: Optional[str] = None


class MemberView(ApiModel):
    """
    Roster entry as shown to admins. The push subscription itself is never
    exposed, only whether one exists.
    """
    id: str
    name: str
    phone: Optional[str] = None
    has_phone: bool
    has_push: bool
    joined_at: str
    is_admin: bool

    @classmethod
    def from_record(cls, member_id: str, member: MemberRecord) -> "MemberView":
        return cls(
            id=member_id,
            name=member.name,
            phone=member.phone,
            has_phone=member.has_phone,
            has_push=member.has_push,
            joined_at=member.joined_at,
            is_admin=member.is_admin,
        )


class AddMemberResponse(ApiModel):
    success: bool = True
    id: str
    member: MemberView


class UpdateMemberResponse(ApiModel):
    success: bool = True
    member: MemberView


class MessageView(ApiModel):
    id: str
    text: str
    sender: str
    sent_at: str


class PushResults(ApiModel):
    sent: int = 0
    failed: int = 0
    no_subscription: int = 0


class SmsResults(ApiModel):
    sent: int = 0
    failed: int = 0


class SendResponse(ApiModel):
    success: bool = True
    message: MessageView
    results: PushResults
    sms_results: SmsResults


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")


MessagesResponse = List[MessageView]
MembersResponse = List[MemberView]
