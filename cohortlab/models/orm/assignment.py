from sqlalchemy import (
    Column,
    String,
    Integer,
    ForeignKey,
    DateTime,
    Enum,
    Index,
    text,
)
from sqlalchemy.orm import relationship
from datetime import datetime
import enum

from .base import Base


class AssignmentStatus(enum.Enum):
    ASSIGNED = "ASSIGNED"
    RETURNED = "RETURNED"


class AssignmentORM(Base):
    __tablename__ = "assignments"

    asst_id = Column(String, primary_key=True, index=True)
    batch_id = Column(String, ForeignKey("batches.batch_id"), nullable=False, index=True)
    worker_id = Column(String, nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)

    status = Column(Enum(AssignmentStatus), default=AssignmentStatus.ASSIGNED, nullable=False)
    accept_time = Column(DateTime, default=datetime.utcnow, nullable=False)

    # A worker holds at most one assignment in progress per batch
    __table_args__ = (
        Index(
            "uq_current_assignment",
            "worker_id",
            "batch_id",
            unique=True,
            sqlite_where=text("status = 'ASSIGNED'"),
            postgresql_where=text("status = 'ASSIGNED'"),
        ),
    )

    instances = relationship(
        "AssignmentInstanceORM",
        back_populates="assignment",
        order_by="AssignmentInstanceORM.id",
    )


class AssignmentInstanceORM(Base):
    """One entry of an assignment's instance history."""

    __tablename__ = "assignment_instances"

    id = Column(Integer, primary_key=True, autoincrement=True)
    asst_id = Column(String, ForeignKey("assignments.asst_id"), nullable=False, index=True)
    group_id = Column(String, ForeignKey("instances.group_id"), nullable=False, index=True)

    join_time = Column(DateTime, default=datetime.utcnow, nullable=False)
    leave_time = Column(DateTime, nullable=True)

    assignment = relationship("AssignmentORM", back_populates="instances")
