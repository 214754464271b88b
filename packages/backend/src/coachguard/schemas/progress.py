"""Pydantic schemas for chapter progress."""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class ProgressMark(BaseModel):
    chapter_id: uuid.UUID
    completed: bool = True


class ProgressRead(BaseModel):
    chapter_id: uuid.UUID
    completed: bool
    completed_at: Optional[datetime] = None

    model_config = {"from_attributes": True}
