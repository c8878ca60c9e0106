# services/server.py
import logging
from datetime import datetime
from typing import Any, Callable, Optional

from sqlalchemy.orm import sessionmaker

from cohortlab.core.db import Store
from cohortlab.core.errors import NotFoundError
from cohortlab.core.scope import GroupScope, current_group
from cohortlab.models.orm.batch import GroupingMode
from cohortlab.models.orm.log import LogORM
from cohortlab.models.orm.treatment import TreatmentORM
from cohortlab.models.orm.worker import WorkerState
from cohortlab.models.schemas.batch import AssignerConfigModel, BatchCreateModel
from cohortlab.models.schemas.connection import ConnectionResponseModel
from cohortlab.repositories.batch_repo import BatchRepository
from cohortlab.repositories.lobby_repo import LobbyRepository
from cohortlab.repositories.log_repo import LogRepository
from cohortlab.repositories.treatment_repo import TreatmentRepository
from cohortlab.repositories.worker_repo import WorkerRepository
from cohortlab.services.assigners import Assigner, build_assigner
from cohortlab.services.assignment_service import AssignmentService
from cohortlab.services.batch_service import Batch, BatchRegistry
from cohortlab.services.instance_service import Instance, InstanceRegistry

logger = logging.getLogger(__name__)


class ExperimentServer:
    """
    Composition root: owns the store, group scope, instance and batch
    registries and the instance initialization handlers, and handles
    connection-layer notifications.
    """

    def __init__(self, session_factory: sessionmaker):
        self.store = Store(session_factory)
        self.scope = GroupScope(self.store)
        self.instances = InstanceRegistry(self)
        self.batches = BatchRegistry(self)
        self.assignments = AssignmentService(self)
        self._init_handlers: list[Callable[[dict], Any]] = []

    # --- instance scoping -------------------------------------------------

    def initialize(self, handler: Callable[[dict], Any]) -> Callable[[dict], Any]:
        """
        Registers a handler run by ``Instance.setup`` for every new instance.
        Usable as a decorator.
        """
        self._init_handlers.append(handler)
        return handler

    @property
    def init_handlers(self) -> tuple:
        return tuple(self._init_handlers)

    def current_instance(self) -> Optional[Instance]:
        group_id = current_group()
        return self.instances.get_instance(group_id) if group_id else None

    def treatment(self) -> Optional[dict]:
        """Treatment of the currently scoped instance."""
        instance = self.current_instance()
        return instance.treatment() if instance else None

    def log(
        self,
        payload: Optional[dict] = None,
        kind: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> LogORM:
        """Writes a log entry tagged with the current group."""
        with self.store.session() as db:
            return LogRepository(db).create_log(current_group(), kind, dict(payload or {}), timestamp)

    def get_logs(self, group_id: Optional[str] = None, kind: Optional[str] = None) -> list[LogORM]:
        with self.store.session() as db:
            return LogRepository(db).get_logs(group_id=group_id, kind=kind)

    # --- campaign setup ---------------------------------------------------

    def create_treatment(self, name: str, params: Optional[dict] = None) -> TreatmentORM:
        with self.store.session() as db:
            return TreatmentRepository(db).save_treatment(name, params or {})

    def create_batch(self, batch_data: BatchCreateModel) -> Batch:
        """
        Creates a batch. In group-count mode the fixed instances are created
        and set up right away and recorded as the batch's experiment ids.
        """
        with self.store.session() as db:
            record = BatchRepository(db).create_batch(batch_data)
        batch = self.batches.get_batch(record.batch_id)

        if batch_data.grouping_mode == GroupingMode.GROUP_COUNT:
            experiment_ids = []
            for _ in range(batch_data.group_val):
                instance = batch.create_instance(batch_data.treatment_ids)
                instance.setup()
                experiment_ids.append(instance.group_id)

            with self.store.session() as db:
                BatchRepository(db).set_experiment_ids(batch.batch_id, experiment_ids)

        logger.info("Created batch %s (%s)", batch.batch_id, batch_data.name)
        return batch

    def install_assigner(self, batch_id: str, config: AssignerConfigModel) -> Assigner:
        assigner = build_assigner(config)
        self.batches.get_batch(batch_id).set_assigner(assigner)
        return assigner

    # --- connection layer -------------------------------------------------

    def _resolve_batch(self, user_id: str, batch_id: Optional[str]) -> Batch:
        if batch_id is not None:
            return self.batches.get_batch(batch_id)

        asst = self.assignments.get_current_user_assignment(user_id)
        if asst is not None:
            return self.batches.get_batch(asst.batch_id)

        active = self.batches.get_active_batches()
        if len(active) != 1:
            raise NotFoundError(f"Cannot pick a batch for {user_id}: {len(active)} active batches")
        return active[0]

    def connection_state(self, user_id: str) -> ConnectionResponseModel:
        with self.store.session() as db:
            worker = WorkerRepository(db).ensure_worker(user_id)
            return ConnectionResponseModel(
                user_id=user_id, state=worker.state, group_id=worker.group_id
            )

    def connect(self, user_id: str, worker_id: str, batch_id: Optional[str] = None) -> ConnectionResponseModel:
        """
        Handles a (re)connection. A user still inside an open instance stays
        there; a user who reached the exit survey stays there; anybody else
        enters the batch lobby, where the assigner picks them up.
        """
        batch = self._resolve_batch(user_id, batch_id)

        with self.store.session() as db:
            worker = WorkerRepository(db).ensure_worker(user_id, worker_id)
            state, group_id = worker.state, worker.group_id

        asst = self.assignments.get_or_create(batch.batch_id, worker_id, user_id)

        if state == WorkerState.EXIT_SURVEY:
            return self.connection_state(user_id)

        if group_id is not None:
            try:
                instance = self.instances.get_instance(group_id)
            except NotFoundError:
                instance = None

            if instance is not None and not instance.is_ended() and user_id in instance.users():
                logger.info("User %s reconnected to instance %s", user_id, group_id)
                return self.connection_state(user_id)

            self.scope.clear_user_group(user_id)

        batch.lobby.add_assignment(asst)
        return self.connection_state(user_id)

    reconnect = connect

    def disconnect(self, user_id: str) -> bool:
        """Removes the user from any lobby they are waiting in."""
        with self.store.session() as db:
            batch_ids = LobbyRepository(db).get_batch_ids_for_user(user_id)

        removed = False
        for batch_id in batch_ids:
            removed = self.batches.get_batch(batch_id).lobby.remove_user(user_id) or removed
        return removed

    def return_assignment(self, user_id: str) -> None:
        """Marks the user's current assignment as returned and frees them from the lobby."""
        asst = self.assignments.get_current_user_assignment(user_id)
        if asst is None:
            raise NotFoundError(f"No current assignment for user {user_id}")

        self.batches.get_batch(asst.batch_id).lobby.remove_assignment(asst)
        asst.set_returned()

