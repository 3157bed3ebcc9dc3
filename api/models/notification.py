"""
Notification models.

Notifications are the operator-facing record of background outcomes
(renewal sweeps, fleet pushes) that have no interactive caller.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class NotificationType(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"
    SUCCESS = "success"


class Notification(BaseModel):
    id: int | None = Field(None, description="Database identifier")
    type: NotificationType = Field(default=NotificationType.INFO)
    title: str = Field(..., description="Short headline, e.g. Renew Certificate Error")
    content: str = Field(default="", description="Message template; placeholders are filled from details")
    details: dict[str, Any] | None = Field(None, description="Structured arguments for the message")
    created_at: datetime = Field(default_factory=datetime.utcnow)


class NotificationListResponse(BaseModel):
    """Paginated list of notifications."""

    notifications: list[Notification] = Field(default_factory=list)
    total: int = Field(..., description="Total number of matching notifications")
    page: int = Field(default=1)
    page_size: int = Field(default=50)
    has_more: bool = Field(default=False)
