from sqlalchemy import Column, String, Enum
import enum

from .base import Base


class WorkerState(str, enum.Enum):
    UNASSIGNED = "unassigned"
    LOBBY = "lobby"
    EXPERIMENT = "experiment"
    EXIT_SURVEY = "exitsurvey"


class WorkerORM(Base):
    __tablename__ = "workers"

    user_id = Column(String, primary_key=True, index=True)
    worker_id = Column(String, nullable=True, index=True)

    state = Column(Enum(WorkerState), default=WorkerState.UNASSIGNED, nullable=False)

    # Group the user currently belongs to, outside of any bound scope
    group_id = Column(String, nullable=True)
