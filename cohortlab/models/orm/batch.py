from sqlalchemy import Column, String, Boolean, Integer, DateTime, Enum
from sqlalchemy.orm import relationship
from datetime import datetime
import enum

from .base import Base, JSON_TYPE


class GroupingMode(enum.Enum):
    GROUP_SIZE = "groupSize"
    GROUP_COUNT = "groupCount"
    NONE = "none"


class BatchORM(Base):
    __tablename__ = "batches"

    batch_id = Column(String, primary_key=True, index=True)
    name = Column(String, nullable=False, unique=True)
    active = Column(Boolean, default=True, nullable=False)

    # groupSize: group_val is the size of each instance
    # groupCount: group_val is the number of fixed instances in experiment_ids
    grouping_mode = Column(Enum(GroupingMode), default=GroupingMode.NONE, nullable=False)
    group_val = Column(Integer, nullable=True)

    experiment_ids = Column(JSON_TYPE, default=list, nullable=False)
    # Treatment names applied to instances the batch creates
    treatment_ids = Column(JSON_TYPE, default=list, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    instances = relationship("InstanceORM", back_populates="batch")
