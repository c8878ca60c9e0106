from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field


class InstanceModel(BaseModel):
    """Snapshot of one experiment instance."""

    group_id: str
    batch_id: Optional[str] = None
    treatments: List[str] = Field(default_factory=list)
    users: List[str] = Field(default_factory=list)
    assignable: Optional[bool] = None
    capacity: Optional[int] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None


class TeardownRequestModel(BaseModel):
    return_to_lobby: bool = True
