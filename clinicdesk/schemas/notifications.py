"""In-app notification and audit trail schemas."""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field


class NotificationType(str, Enum):
    """Notification type enumeration."""

    APPOINTMENT_UPDATED = "APPOINTMENT_UPDATED"
    PAYMENT_SUCCESS = "PAYMENT_SUCCESS"
    PAYMENT_DECLINED = "PAYMENT_DECLINED"
    PAYMENT_ERROR = "PAYMENT_ERROR"


class NotificationRecord(BaseModel):
    """Schema for notification record."""

    id: UUID
    user_id: UUID
    notification_type: NotificationType
    audience_role: str | None = None
    payload: dict[str, Any]
    is_read: bool
    read_at: datetime | None = None
    created_at: datetime

    class Config:
        """Pydantic config."""

        from_attributes = True


class NotificationListResponse(BaseModel):
    """Schema for paginated notification list."""

    total: int
    unread: int
    items: list[NotificationRecord]


class MarkAllReadResponse(BaseModel):
    """Schema for mark-all-read result."""

    updated: int


class AuditEntryRecord(BaseModel):
    """Schema for one audit trail entry."""

    id: UUID
    entity_type: str
    entity_id: str
    actor_id: str
    action: str
    diff: dict[str, Any] | None = None
    at: datetime

    class Config:
        """Pydantic config."""

        from_attributes = True


class AuditQuery(BaseModel):
    """Schema for audit trail lookups."""

    entity_type: str = Field(..., min_length=1, max_length=50)
    entity_id: str = Field(..., min_length=1, max_length=100)
    limit: int = Field(default=100, ge=1, le=500)
