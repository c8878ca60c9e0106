# Importing every model registers its table on Base.metadata
from .base import Base
from .assignment import AssignmentORM, AssignmentInstanceORM, AssignmentStatus
from .batch import BatchORM, GroupingMode
from .instance import InstanceORM, InstanceUserORM
from .lobby import LobbyStatusORM
from .log import LogORM
from .treatment import TreatmentORM
from .worker import WorkerORM, WorkerState
