"""
Domain records persisted by the stores.

Records are pydantic models serialized by alias, so the on-disk JSON keeps
camelCase keys (groupCode, joinedAt, sentAt, ...).
For request/response schemas, see schemas.py.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from relay.utils import codes_match


# Opaque browser push subscription, normally {endpoint, keys: {p256dh, auth}}.
# Any JSON value is stored and handed to the push sender as-is, only ever
# checked for presence.
PushSubscription = Any


class Tier(str, Enum):
    """Credential tier granted by a code."""
    MEMBER = "member"
    ADMIN = "admin"


class DeliveryStatus(str, Enum):
    """Outcome of one delivery attempt to one recipient."""
    SENT = "sent"
    FAILED = "failed"
    # The push service says the subscription will never work again
    EXPIRED = "expired"


class CleanupPolicy(str, Enum):
    """What to do with a member whose push subscription expired."""
    CLEAR = "clear"
    REMOVE = "remove"


class Record(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_document(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


class IdentityRecord(Record):
    """Deployment-wide credentials. Created once, never mutated."""
    group_code: str
    admin_code: str
    vapid_public_key: str
    vapid_private_key: str

    def tier_for(self, code: Optional[str]) -> Optional[Tier]:
        if codes_match(code, self.admin_code):
            return Tier.ADMIN
        if codes_match(code, self.group_code):
            return Tier.MEMBER
        return None


class MemberRecord(Record):
    name: str
    push_subscription: Optional[PushSubscription] = Field(default=None, alias="subscription")
    phone: Optional[str] = None
    joined_at: str
    is_admin: bool = False

    @property
    def has_push(self) -> bool:
        return bool(self.push_subscription)

    @property
    def has_phone(self) -> bool:
        return bool(self.phone)


class MessageRecord(Record):
    id: str
    text: str
    sender: str = "Admin"
    sent_at: str
