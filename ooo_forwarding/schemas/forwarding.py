"""Pydantic schemas for forwarding schedules."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field

from ooo_forwarding.db.enums import ForwardingStatus


class ForwardingScheduleCreate(BaseModel):
    """Request to schedule forwarding for the caller's own mailbox."""
    forward_to_email: EmailStr
    forward_to_name: str | None = Field(None, max_length=255)
    starts_at: datetime
    ends_at: datetime


class ForwardingScheduleRead(BaseModel):
    """Schedule as stored (intent + rule linkage)."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_email: str
    forward_to_email: str
    forward_to_name: str | None
    starts_at: datetime
    ends_at: datetime
    status: ForwardingStatus
    external_rule_id: str | None
    rule_cleanup_pending: bool = False
    last_error: str | None = None
    created_at: datetime
    updated_at: datetime


class ForwardingScheduleCreateResponse(BaseModel):
    schedule: ForwardingScheduleRead
    warning: str | None = None


class MailRuleRead(BaseModel):
    """Forwarding rule as currently enforced by the mail system."""
    id: str
    display_name: str
    is_enabled: bool
    forward_to: str | None = None
    forward_to_name: str | None = None


class ForwardingStatusResponse(BaseModel):
    """Declared intent next to enforced state, so drift is visible."""
    gateway_configured: bool
    schedule: ForwardingScheduleRead | None = None
    rule: MailRuleRead | None = None
    rule_error: str | None = None


class ForwardingCancelResponse(BaseModel):
    schedule: ForwardingScheduleRead
    rule_disabled: bool


class ReconcileResponse(BaseModel):
    activated: int
    deactivated: int
    missed: int
    cleaned_up: int = 0
    repaired: int = 0
    errors: list[str] | None = None
