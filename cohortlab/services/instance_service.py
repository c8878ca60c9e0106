# services/instance_service.py
import logging
import threading
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable, Optional

from cohortlab.core.errors import NotFoundError, StateError
from cohortlab.core.scope import bind_group
from cohortlab.models.orm.treatment import TreatmentORM
from cohortlab.models.orm.worker import WorkerState
from cohortlab.models.schemas.instance import InstanceModel
from cohortlab.repositories.assignment_repo import AssignmentRepository
from cohortlab.repositories.instance_repo import InstanceRepository
from cohortlab.repositories.treatment_repo import TreatmentRepository
from cohortlab.repositories.worker_repo import WorkerRepository

if TYPE_CHECKING:
    from cohortlab.services.assignment_service import Assignment
    from cohortlab.services.batch_service import Batch
    from cohortlab.services.server import ExperimentServer

logger = logging.getLogger(__name__)


def merge_treatments(treatments: list[TreatmentORM]) -> dict:
    """
    Merges treatment params in list order; on key conflicts the later
    treatment wins. The result also lists the merged treatment names.
    """
    result: dict[str, Any] = {}
    for treatment in treatments:
        result.update(treatment.params or {})
    result["treatments"] = [treatment.name for treatment in treatments]
    return result


class Instance:
    """
    One running experiment group, identified by its group id.

    Instances are obtained through ``InstanceRegistry.get_instance``; there is
    exactly one object per group id for a server.
    """

    def __init__(self, server: "ExperimentServer", group_id: str):
        if group_id in server.instances:
            raise StateError("Instance already exists; use get_instance")

        self.server = server
        self.group_id = group_id

    def __repr__(self) -> str:
        return f"Instance(group_id={self.group_id!r})"

    def _record(self):
        with self.server.store.session() as db:
            return InstanceRepository(db).get_instance(self.group_id)

    def bind_operation(self, func: Callable[[dict], Any], context: Optional[dict] = None) -> Any:
        """
        Runs ``func(context)`` scoped to this instance. ``context["instance"]``
        is set to this instance.
        """
        context = {} if context is None else context
        context["instance"] = self
        return bind_group(self.group_id, func, context)

    def setup(self) -> None:
        """Logs the resolved treatment and runs the initialization handlers."""

        def _initialize(context: dict) -> None:
            self.server.log({"treatmentData": self.treatment()}, kind="initialized")

            for handler in self.server.init_handlers:
                handler(context)

        self.bind_operation(_initialize)
        logger.info("Instance %s initialized", self.group_id)

    def add_assignment(self, asst: "Assignment") -> bool:
        """
        Adds a connected user to this instance.

        Membership, worker state, the user's group and the assignment history
        are written in one transaction. Returns False if the user already was
        a member. Raises StateError if the instance has ended and
        InstanceFullError if it is at capacity.
        """
        now = datetime.utcnow()

        with self.server.store.session() as db:
            added = InstanceRepository(db).add_member(self.group_id, asst.user_id, now)

            workers = WorkerRepository(db)
            workers.set_group(asst.user_id, self.group_id)
            workers.set_state(asst.user_id, WorkerState.EXPERIMENT)

            if added:
                AssignmentRepository(db).add_join(asst.asst_id, self.group_id, now)

        if added:
            logger.info("User %s joined instance %s", asst.user_id, self.group_id)
        return added

    def users(self) -> list[str]:
        with self.server.store.session() as db:
            return InstanceRepository(db).get_user_ids(self.group_id)

    def batch(self) -> Optional["Batch"]:
        record = self._record()
        if record is None or record.batch_id is None:
            return None

        try:
            return self.server.batches.get_batch(record.batch_id)
        except NotFoundError:
            return None

    def treatment(self) -> Optional[dict]:
        """Merged treatment parameters, or None if the instance record is gone."""
        with self.server.store.session() as db:
            record = InstanceRepository(db).get_instance(self.group_id)
            if record is None:
                return None
            return merge_treatments(TreatmentRepository(db).get_treatments(record.treatments))

    def treatment_names(self) -> list[str]:
        record = self._record()
        return list(record.treatments) if record is not None else []

    def get_duration(self) -> Optional[timedelta]:
        """How long the instance has been running; None before anyone joined."""
        record = self._record()
        if record is None or record.start_time is None:
            return None
        return (record.end_time or datetime.utcnow()) - record.start_time

    def is_ended(self) -> bool:
        record = self._record()
        return record is not None and record.end_time is not None

    def to_model(self) -> InstanceModel:
        record = self._record()
        if record is None:
            raise NotFoundError(f"Instance does not exist: {self.group_id}")
        return InstanceModel(
            group_id=record.group_id,
            batch_id=record.batch_id,
            treatments=record.treatments,
            users=self.users(),
            assignable=record.assignable,
            capacity=record.capacity,
            start_time=record.start_time,
            end_time=record.end_time,
        )

    def teardown(self, return_to_lobby: bool = True) -> datetime:
        """
        Closes this instance, optionally returning its users to the lobby.

        One timestamp is used for the end time, the teardown log entry and
        every user's leave time. Returns that timestamp.
        """
        now = datetime.utcnow()

        with self.server.store.session() as db:
            InstanceRepository(db).set_end_time(self.group_id, now)

        bind_group(self.group_id, self.server.log, {}, kind="teardown", timestamp=now)
        logger.info("Instance %s torn down", self.group_id)

        # Users may keep accessing the instance data when not returned
        if not return_to_lobby:
            return now

        for user_id in self.users():
            self.send_user_to_lobby(user_id, leave_time=now)

        return now

    def send_user_to_lobby(self, user_id: str, leave_time: Optional[datetime] = None) -> None:
        """Sends a user that is part of this instance back to the lobby."""
        self.server.scope.clear_user_group(user_id)

        asst = self.server.assignments.get_current_user_assignment(user_id)
        if asst is None:
            return

        asst.leave_instance(self.group_id, leave_time)

        batch = self.batch()
        if batch is None:
            logger.warning("Instance %s has no batch; %s not returned to lobby", self.group_id, user_id)
            return

        batch.lobby.add_assignment(asst)


class InstanceRegistry:
    """
    Map of group id to Instance, with an atomic get-or-create so concurrent
    first lookups of the same group yield one object.
    """

    def __init__(self, server: "ExperimentServer"):
        self.server = server
        self._instances: dict[str, Instance] = {}
        self._lock = threading.Lock()

    def __contains__(self, group_id: str) -> bool:
        return group_id in self._instances

    def get_instance(self, group_id: str) -> Instance:
        instance = self._instances.get(group_id)
        if instance is not None:
            return instance

        with self.server.store.session() as db:
            exists = InstanceRepository(db).get_instance(group_id) is not None
        if not exists:
            raise NotFoundError(f"Instance does not exist: {group_id}")

        with self._lock:
            instance = self._instances.get(group_id)
            if instance is None:
                instance = Instance(self.server, group_id)
                self._instances[group_id] = instance
            return instance
