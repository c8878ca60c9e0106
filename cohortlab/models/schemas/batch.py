from datetime import datetime
from typing import List, Literal, Optional
from pydantic import BaseModel, Field, ConfigDict, model_validator

from cohortlab.models.orm.batch import GroupingMode


class GroupConfig(BaseModel):
    """One stage of a multi-group assigner."""

    treatments: List[str] = Field(default_factory=list)
    size: Optional[int] = Field(
        None,
        ge=1,
        description="Members per instance. None makes the group absorbing (unbounded).",
    )

    @property
    def is_absorbing(self) -> bool:
        return self.size is None


class BatchCreateModel(BaseModel):
    """Schema for creating a batch (API Input)."""

    name: str
    active: bool = True
    grouping_mode: GroupingMode = GroupingMode.NONE
    group_val: Optional[int] = Field(None, ge=1)
    treatment_ids: List[str] = Field(
        default_factory=list,
        description="Treatment names applied to instances the batch creates.",
    )

    @model_validator(mode="after")
    def _group_val_required(self):
        if self.grouping_mode != GroupingMode.NONE and self.group_val is None:
            raise ValueError(f"group_val is required for grouping mode {self.grouping_mode.value}")
        return self


class BatchModel(BaseModel):
    batch_id: str
    name: str
    active: bool
    grouping_mode: GroupingMode
    group_val: Optional[int] = None
    experiment_ids: List[str] = Field(default_factory=list)
    treatment_ids: List[str] = Field(default_factory=list)
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class AssignerConfigModel(BaseModel):
    """Which assignment policy a batch runs, and its parameters."""

    kind: Literal["sequential", "round_robin", "tutorial_group", "tutorial_multi_group"]
    tutorial_treatments: List[str] = Field(default_factory=list)
    group_treatments: List[str] = Field(default_factory=list)
    group_configs: List[GroupConfig] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_policy_params(self):
        if self.kind == "tutorial_multi_group" and not self.group_configs:
            raise ValueError("tutorial_multi_group needs at least one group config")
        return self
