# backend/app/models/account.py

from typing import Optional
from pydantic import BaseModel, Field


class DeletionRequestCreate(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class PublicDeletionRequestCreate(BaseModel):
    email: str = Field(..., min_length=1)
    reason: Optional[str] = Field(None, max_length=500)


class DeletionCancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)
