# repositories/batch_repo.py
import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from cohortlab.core.errors import StateError
from cohortlab.models.orm.batch import BatchORM
from cohortlab.models.schemas.batch import BatchCreateModel


class BatchRepository:
    def __init__(self, db: Session):
        self.db = db

    def create_batch(self, batch_data: BatchCreateModel) -> BatchORM:
        batch_dict = batch_data.model_dump()
        batch_dict["batch_id"] = str(uuid.uuid4())

        db_batch = BatchORM(**batch_dict, experiment_ids=[])
        try:
            with self.db.begin_nested():
                self.db.add(db_batch)
        except IntegrityError:
            raise StateError(f"Batch named {batch_data.name!r} already exists")

        return db_batch

    def get_batch(self, batch_id: str) -> Optional[BatchORM]:
        return self.db.get(BatchORM, batch_id)

    def get_active_batches(self) -> list[BatchORM]:
        stmt = (
            select(BatchORM)
            .where(BatchORM.active.is_(True))
            .order_by(BatchORM.created_at)
        )
        return list(self.db.scalars(stmt).all())

    def set_experiment_ids(self, batch_id: str, experiment_ids: list[str]) -> BatchORM:
        db_batch = self.db.get(BatchORM, batch_id)
        db_batch.experiment_ids = list(experiment_ids)
        self.db.flush()
        return db_batch

    def set_active(self, batch_id: str, active: bool) -> BatchORM:
        db_batch = self.db.get(BatchORM, batch_id)
        db_batch.active = active
        self.db.flush()
        return db_batch
