# repositories/worker_repo.py
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from cohortlab.models.orm.worker import WorkerORM, WorkerState


class WorkerRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_worker(self, user_id: str) -> Optional[WorkerORM]:
        return self.db.get(WorkerORM, user_id)

    def get_by_worker_id(self, worker_id: str) -> Optional[WorkerORM]:
        stmt = select(WorkerORM).where(WorkerORM.worker_id == worker_id)
        return self.db.scalars(stmt).first()

    def ensure_worker(self, user_id: str, worker_id: Optional[str] = None) -> WorkerORM:
        """
        Returns the worker record for ``user_id``, creating it in the
        "unassigned" state the first time the user is seen.
        """
        worker = self.db.get(WorkerORM, user_id)
        if worker is None:
            try:
                with self.db.begin_nested():
                    worker = WorkerORM(
                        user_id=user_id, worker_id=worker_id, state=WorkerState.UNASSIGNED
                    )
                    self.db.add(worker)
            except IntegrityError:
                # Created concurrently; use the stored one
                worker = self.db.get(WorkerORM, user_id, populate_existing=True)
        if worker_id is not None and worker.worker_id is None:
            worker.worker_id = worker_id
        return worker

    def set_state(self, user_id: str, state: WorkerState) -> WorkerORM:
        worker = self.ensure_worker(user_id)
        worker.state = state
        self.db.flush()
        return worker

    def set_group(self, user_id: str, group_id: Optional[str]) -> WorkerORM:
        worker = self.ensure_worker(user_id)
        worker.group_id = group_id
        self.db.flush()
        return worker
