# repositories/assignment_repo.py
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from cohortlab.models.orm.assignment import (
    AssignmentORM,
    AssignmentInstanceORM,
    AssignmentStatus,
)


class AssignmentRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_assignment(self, asst_id: str) -> Optional[AssignmentORM]:
        return self.db.get(AssignmentORM, asst_id)

    def get_current_for_user(self, user_id: str) -> Optional[AssignmentORM]:
        """The user's most recent assignment that has not been returned."""
        stmt = (
            select(AssignmentORM)
            .where(
                AssignmentORM.user_id == user_id,
                AssignmentORM.status == AssignmentStatus.ASSIGNED,
            )
            .order_by(AssignmentORM.accept_time.desc())
        )
        return self.db.scalars(stmt).first()

    def get_current_for_worker(self, worker_id: str, batch_id: str) -> Optional[AssignmentORM]:
        stmt = (
            select(AssignmentORM)
            .where(
                AssignmentORM.worker_id == worker_id,
                AssignmentORM.batch_id == batch_id,
                AssignmentORM.status == AssignmentStatus.ASSIGNED,
            )
            .order_by(AssignmentORM.accept_time.desc())
        )
        return self.db.scalars(stmt).first()

    def create_assignment(self, batch_id: str, worker_id: str, user_id: str) -> AssignmentORM:
        db_assignment = AssignmentORM(
            asst_id=str(uuid.uuid4()),
            batch_id=batch_id,
            worker_id=worker_id,
            user_id=user_id,
            status=AssignmentStatus.ASSIGNED,
            accept_time=datetime.utcnow(),
        )
        self.db.add(db_assignment)
        self.db.flush()
        return db_assignment

    def get_or_create_current(self, batch_id: str, worker_id: str, user_id: str) -> tuple[AssignmentORM, bool]:
        """
        The worker's assignment in progress for the batch, created when there
        is none. Returns the record and whether it was created.
        """
        record = self.get_current_for_worker(worker_id, batch_id)
        if record is not None:
            return record, False

        try:
            with self.db.begin_nested():
                record = self.create_assignment(batch_id, worker_id, user_id)
        except IntegrityError:
            # Created concurrently; the unique index on current assignments fired
            return self.get_current_for_worker(worker_id, batch_id), False

        return record, True

    def set_status(self, asst_id: str, status: AssignmentStatus) -> AssignmentORM:
        db_assignment = self.db.get(AssignmentORM, asst_id)
        db_assignment.status = status
        self.db.flush()
        return db_assignment

    def get_history(self, asst_id: str) -> list[AssignmentInstanceORM]:
        """Instance join records of an assignment, oldest first."""
        stmt = (
            select(AssignmentInstanceORM)
            .where(AssignmentInstanceORM.asst_id == asst_id)
            .order_by(AssignmentInstanceORM.id)
        )
        return list(self.db.scalars(stmt).all())

    def count_instances(self, asst_ids: list[str]) -> dict[str, int]:
        counts = {asst_id: 0 for asst_id in asst_ids}
        if not asst_ids:
            return counts

        stmt = (
            select(AssignmentInstanceORM.asst_id, func.count(AssignmentInstanceORM.id))
            .where(AssignmentInstanceORM.asst_id.in_(asst_ids))
            .group_by(AssignmentInstanceORM.asst_id)
        )
        for asst_id, count in self.db.execute(stmt).all():
            counts[asst_id] = count
        return counts

    def add_join(self, asst_id: str, group_id: str, join_time: datetime) -> AssignmentInstanceORM:
        record = AssignmentInstanceORM(asst_id=asst_id, group_id=group_id, join_time=join_time)
        self.db.add(record)
        self.db.flush()
        return record

    def record_leave(self, asst_id: str, group_id: str, leave_time: datetime) -> bool:
        """
        Stamps the leave time on the latest open join record for ``group_id``.
        Returns False when there is no open record.
        """
        stmt = (
            select(AssignmentInstanceORM)
            .where(
                AssignmentInstanceORM.asst_id == asst_id,
                AssignmentInstanceORM.group_id == group_id,
                AssignmentInstanceORM.leave_time.is_(None),
            )
            .order_by(AssignmentInstanceORM.id.desc())
        )
        record = self.db.scalars(stmt).first()
        if record is None:
            return False

        record.leave_time = leave_time
        self.db.flush()
        return True
