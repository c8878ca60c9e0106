# services/batch_service.py
import logging
import threading
from datetime import datetime
from typing import TYPE_CHECKING, Optional

from cohortlab.core.errors import NotFoundError
from cohortlab.models.orm.batch import BatchORM
from cohortlab.models.orm.log import LogORM
from cohortlab.models.schemas.batch import BatchModel
from cohortlab.repositories.batch_repo import BatchRepository
from cohortlab.repositories.instance_repo import InstanceRepository
from cohortlab.repositories.log_repo import LogRepository
from cohortlab.services.instance_service import Instance
from cohortlab.services.lobby_service import Lobby

if TYPE_CHECKING:
    from cohortlab.services.assigners import Assigner
    from cohortlab.services.server import ExperimentServer

logger = logging.getLogger(__name__)


class Batch:
    """
    A campaign: its lobby, the active assigner and the instances created for
    it. Configuration is read from the stored batch record on every access.
    """

    def __init__(self, server: "ExperimentServer", batch_id: str):
        self.server = server
        self.batch_id = batch_id
        self.lobby = Lobby(self)
        self.assigner: Optional["Assigner"] = None
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return f"Batch(batch_id={self.batch_id!r})"

    def _record(self) -> BatchORM:
        with self.server.store.session() as db:
            record = BatchRepository(db).get_batch(self.batch_id)
        if record is None:
            raise NotFoundError(f"Batch does not exist: {self.batch_id}")
        return record

    @property
    def group_val(self) -> Optional[int]:
        return self._record().group_val

    @property
    def experiment_ids(self) -> list[str]:
        return list(self._record().experiment_ids or [])

    def treatments(self) -> list[str]:
        return list(self._record().treatment_ids or [])

    def is_active(self) -> bool:
        return self._record().active

    def set_active(self, active: bool) -> None:
        with self.server.store.session() as db:
            BatchRepository(db).set_active(self.batch_id, active)

    def to_model(self) -> BatchModel:
        return BatchModel.model_validate(self._record())

    def record_event(self, kind: str, payload: Optional[dict] = None) -> LogORM:
        """Writes a batch level entry to the experiment log."""
        with self.server.store.session() as db:
            return LogRepository(db).create_log(None, kind, dict(payload or {}), batch_id=self.batch_id)

    def last_event(self, kind: str) -> Optional[LogORM]:
        with self.server.store.session() as db:
            return LogRepository(db).get_last_log(self.batch_id, kind)

    def set_assigner(self, assigner: "Assigner") -> None:
        """Replaces the active assigner, moving lobby subscriptions over."""
        with self._lock:
            assigner.initialize(self)
            if self.assigner is not None:
                self.assigner.uninstall()
            self.assigner = assigner
        logger.info("Batch %s now uses %s", self.batch_id, type(assigner).__name__)

    def create_instance(
        self,
        treatments: Optional[list[str]] = None,
        capacity: Optional[int] = None,
        assignable: Optional[bool] = None,
    ) -> Instance:
        """Creates an instance of this batch; defaults to the batch treatments."""
        if treatments is None:
            treatments = self.treatments()

        with self.server.store.session() as db:
            record = InstanceRepository(db).create_instance(
                self.batch_id, treatments, capacity=capacity, assignable=assignable
            )

        logger.info("Created instance %s in batch %s with %s", record.group_id, self.batch_id, treatments)
        return self.server.instances.get_instance(record.group_id)

    def get_instances(
        self,
        open_only: bool = False,
        assignable: Optional[bool] = None,
        created_after: Optional[datetime] = None,
    ) -> list[Instance]:
        """Instances of this batch in creation order."""
        with self.server.store.session() as db:
            records = InstanceRepository(db).get_instances_for_batch(
                self.batch_id, open_only=open_only, assignable=assignable, created_after=created_after
            )
        return [self.server.instances.get_instance(record.group_id) for record in records]

    def member_counts(self, group_ids: list[str]) -> dict[str, int]:
        with self.server.store.session() as db:
            return InstanceRepository(db).count_members(group_ids)


class BatchRegistry:
    """Map of batch id to Batch with atomic get-or-create."""

    def __init__(self, server: "ExperimentServer"):
        self.server = server
        self._batches: dict[str, Batch] = {}
        self._lock = threading.Lock()

    def get_batch(self, batch_id: str) -> Batch:
        batch = self._batches.get(batch_id)
        if batch is not None:
            return batch

        with self.server.store.session() as db:
            exists = BatchRepository(db).get_batch(batch_id) is not None
        if not exists:
            raise NotFoundError(f"Batch does not exist: {batch_id}")

        with self._lock:
            batch = self._batches.get(batch_id)
            if batch is None:
                batch = Batch(self.server, batch_id)
                self._batches[batch_id] = batch
            return batch

    def get_active_batches(self) -> list[Batch]:
        with self.server.store.session() as db:
            records = BatchRepository(db).get_active_batches()
        return [self.get_batch(record.batch_id) for record in records]
