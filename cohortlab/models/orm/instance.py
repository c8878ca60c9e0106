from sqlalchemy import (
    Column,
    String,
    Boolean,
    Integer,
    ForeignKey,
    DateTime,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from datetime import datetime

from .base import Base, JSON_TYPE


class InstanceORM(Base):
    __tablename__ = "instances"

    group_id = Column(String, primary_key=True, index=True)
    batch_id = Column(String, ForeignKey("batches.batch_id"), nullable=True, index=True)

    # Ordered treatment names; later entries win when merged
    treatments = Column(JSON_TYPE, default=list, nullable=False)

    assignable = Column(Boolean, nullable=True)

    # Upper bound on membership, None for unbounded
    capacity = Column(Integer, nullable=True)
    # Always equal to the number of rows in instance_users
    member_count = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    start_time = Column(DateTime, nullable=True)
    end_time = Column(DateTime, nullable=True)

    batch = relationship("BatchORM", back_populates="instances")
    members = relationship(
        "InstanceUserORM",
        back_populates="instance",
        order_by="InstanceUserORM.id",
    )


class InstanceUserORM(Base):
    __tablename__ = "instance_users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    group_id = Column(String, ForeignKey("instances.group_id"), nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)

    __table_args__ = (
        UniqueConstraint("group_id", "user_id", name="uq_instance_user"),
    )

    instance = relationship("InstanceORM", back_populates="members")
