"""Pydantic schemas for profiles."""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from coachguard.config import settings
from coachguard.policy.roles import Role


class ProfileRead(BaseModel):
    id: uuid.UUID
    first_name: str
    last_name: str
    role: str
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class ProfileUpdate(BaseModel):
    """What an owner may change about their own profile. Nothing else."""

    first_name: Optional[str] = Field(None, min_length=1, max_length=settings.name_max_length)
    last_name: Optional[str] = Field(None, min_length=1, max_length=settings.name_max_length)

    model_config = {"extra": "forbid"}


class RoleUpdate(BaseModel):
    role: Role
