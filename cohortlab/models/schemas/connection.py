from typing import Optional
from pydantic import BaseModel

from cohortlab.models.orm.worker import WorkerState


class ConnectionModel(BaseModel):
    """Notification delivered by the connection layer."""

    user_id: str
    worker_id: str
    # Defaults to the only active batch when omitted
    batch_id: Optional[str] = None


class DisconnectModel(BaseModel):
    user_id: str


class ConnectionResponseModel(BaseModel):
    user_id: str
    state: WorkerState
    group_id: Optional[str] = None
