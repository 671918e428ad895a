# backend/app/models/notification.py

from typing import List, Optional, Dict, Any
from pydantic import BaseModel, Field


class MarkReadRequest(BaseModel):
    """Exactly one of ``id``, ``ids`` or ``all`` selects what to mark."""
    id: Optional[str] = None
    ids: Optional[List[str]] = None
    all: bool = False


class DismissRequest(BaseModel):
    id: str = Field(..., min_length=1)


class NotificationCreateRequest(BaseModel):
    userIds: List[str] = Field(..., min_length=1)
    title: str = Field(..., min_length=1)
    message: Optional[str] = None
    type: str = "system"
    category: Optional[str] = None
    priority: str = "normal"
    groupKey: Optional[str] = None
    data: Dict[str, Any] = Field(default_factory=dict)


class UnreadCountResponse(BaseModel):
    unreadCount: int
