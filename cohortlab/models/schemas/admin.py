from typing import Any, List
from pydantic import BaseModel, Field


class BulkMessageModel(BaseModel):
    worker_ids: List[str] = Field(..., min_length=1)
    subject: str
    body: str


class HitExtensionModel(BaseModel):
    hit_id: str
    assignments: int = Field(0, ge=0, description="Additional assignments to allow.")
    seconds: int = Field(0, ge=0, description="Additional lifetime in seconds.")


class ExternalCallResponseModel(BaseModel):
    result: Any = None
