from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field, ConfigDict

from cohortlab.models.orm.assignment import AssignmentStatus


class InstanceJoinModel(BaseModel):
    """One entry of an assignment's instance history."""

    id: str = Field(..., validation_alias="group_id")
    join_time: datetime
    leave_time: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)


class AssignmentModel(BaseModel):
    """Data model for a participant's durable assignment record."""

    asst_id: str
    batch_id: str
    worker_id: str
    user_id: str
    status: AssignmentStatus
    accept_time: datetime
    instances: List[InstanceJoinModel] = Field(default_factory=list)

    model_config = ConfigDict(from_attributes=True)
