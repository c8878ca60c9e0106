from typing import Dict
from pydantic import BaseModel, Field, ConfigDict


class TreatmentCreateModel(BaseModel):
    """Schema for creating a named treatment (API Input)."""

    name: str = Field(..., min_length=1)
    params: Dict = Field(default_factory=dict, description="Flexible JSON object.")


class TreatmentModel(TreatmentCreateModel):
    model_config = ConfigDict(from_attributes=True)
