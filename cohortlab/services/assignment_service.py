# services/assignment_service.py
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Optional

from cohortlab.core.errors import NotFoundError
from cohortlab.models.orm.assignment import AssignmentORM, AssignmentStatus
from cohortlab.models.orm.worker import WorkerState
from cohortlab.models.schemas.assignment import AssignmentModel, InstanceJoinModel
from cohortlab.repositories.assignment_repo import AssignmentRepository
from cohortlab.repositories.worker_repo import WorkerRepository

if TYPE_CHECKING:
    from cohortlab.services.server import ExperimentServer

logger = logging.getLogger(__name__)


class Assignment:
    """
    A participant's durable participation record: status plus the ordered
    history of instances the participant joined.

    The object only caches identifiers; history and status are always read
    from the store.
    """

    def __init__(self, server: "ExperimentServer", record: AssignmentORM):
        self.server = server
        self.asst_id = record.asst_id
        self.batch_id = record.batch_id
        self.worker_id = record.worker_id
        self.user_id = record.user_id

    def __repr__(self) -> str:
        return f"Assignment(asst_id={self.asst_id!r}, user_id={self.user_id!r})"

    def _record(self) -> AssignmentORM:
        with self.server.store.session() as db:
            record = AssignmentRepository(db).get_assignment(self.asst_id)
        if record is None:
            raise NotFoundError(f"Assignment does not exist: {self.asst_id}")
        return record

    @property
    def status(self) -> AssignmentStatus:
        return self._record().status

    def get_instances(self) -> list[InstanceJoinModel]:
        """Instances this assignment joined, oldest first."""
        with self.server.store.session() as db:
            history = AssignmentRepository(db).get_history(self.asst_id)
        return [InstanceJoinModel.model_validate(entry) for entry in history]

    def instance_count(self) -> int:
        with self.server.store.session() as db:
            return AssignmentRepository(db).count_instances([self.asst_id])[self.asst_id]

    def leave_instance(self, group_id: str, leave_time: Optional[datetime] = None) -> None:
        with self.server.store.session() as db:
            recorded = AssignmentRepository(db).record_leave(
                self.asst_id, group_id, leave_time or datetime.utcnow()
            )
        if not recorded:
            logger.warning(
                "Assignment %s has no open record for instance %s", self.asst_id, group_id
            )

    def show_exit_survey(self) -> None:
        with self.server.store.session() as db:
            WorkerRepository(db).set_state(self.user_id, WorkerState.EXIT_SURVEY)
        logger.info("User %s sent to exit survey", self.user_id)

    def set_returned(self) -> None:
        with self.server.store.session() as db:
            AssignmentRepository(db).set_status(self.asst_id, AssignmentStatus.RETURNED)

    def to_model(self) -> AssignmentModel:
        with self.server.store.session() as db:
            record = AssignmentRepository(db).get_assignment(self.asst_id)
            # history is a lazy relationship, validate while the session is open
            return AssignmentModel.model_validate(record)


class AssignmentService:
    def __init__(self, server: "ExperimentServer"):
        self.server = server

    def get_assignment(self, asst_id: str) -> Assignment:
        with self.server.store.session() as db:
            record = AssignmentRepository(db).get_assignment(asst_id)
        if record is None:
            raise NotFoundError(f"Assignment does not exist: {asst_id}")
        return Assignment(self.server, record)

    def get_current_user_assignment(self, user_id: str) -> Optional[Assignment]:
        """The user's assignment that is still in progress, if any."""
        with self.server.store.session() as db:
            record = AssignmentRepository(db).get_current_for_user(user_id)
        return Assignment(self.server, record) if record else None

    def get_or_create(self, batch_id: str, worker_id: str, user_id: str) -> Assignment:
        with self.server.store.session() as db:
            record, created = AssignmentRepository(db).get_or_create_current(batch_id, worker_id, user_id)
            if created:
                logger.info(
                    "Created assignment %s for worker %s in batch %s",
                    record.asst_id,
                    worker_id,
                    batch_id,
                )
        return Assignment(self.server, record)
