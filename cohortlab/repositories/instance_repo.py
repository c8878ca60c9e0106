# repositories/instance_repo.py
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from cohortlab.core.errors import InstanceFullError, NotFoundError, StateError
from cohortlab.models.orm.instance import InstanceORM, InstanceUserORM


class InstanceRepository:
    def __init__(self, db: Session):
        """Initializes the repository with a database session."""
        self.db = db

    def create_instance(
        self,
        batch_id: Optional[str],
        treatments: list[str],
        capacity: Optional[int] = None,
        assignable: Optional[bool] = None,
    ) -> InstanceORM:
        db_instance = InstanceORM(
            group_id=str(uuid.uuid4()),
            batch_id=batch_id,
            treatments=list(treatments),
            capacity=capacity,
            assignable=assignable,
            member_count=0,
            created_at=datetime.utcnow(),
        )
        self.db.add(db_instance)
        self.db.flush()
        return db_instance

    def get_instance(self, group_id: str) -> Optional[InstanceORM]:
        # Bulk updates below bypass the identity map, so always reload
        return self.db.get(InstanceORM, group_id, populate_existing=True)

    def get_instances_for_batch(
        self,
        batch_id: str,
        open_only: bool = False,
        assignable: Optional[bool] = None,
        created_after: Optional[datetime] = None,
    ) -> list[InstanceORM]:
        """Instances of a batch in creation order, optionally filtered."""
        stmt = select(InstanceORM).where(InstanceORM.batch_id == batch_id)

        if created_after is not None:
            stmt = stmt.where(InstanceORM.created_at > created_after)

        if open_only:
            stmt = stmt.where(InstanceORM.end_time.is_(None))

        if assignable is not None:
            stmt = stmt.where(InstanceORM.assignable.is_(assignable))

        stmt = stmt.order_by(InstanceORM.created_at)

        return list(self.db.scalars(stmt).all())

    def get_user_ids(self, group_id: str) -> list[str]:
        stmt = (
            select(InstanceUserORM.user_id)
            .where(InstanceUserORM.group_id == group_id)
            .order_by(InstanceUserORM.id)
        )
        return list(self.db.scalars(stmt).all())

    def count_members(self, group_ids: list[str]) -> dict[str, int]:
        """Membership counts keyed by group id; groups without members map to 0."""
        counts = {group_id: 0 for group_id in group_ids}
        if not group_ids:
            return counts

        stmt = (
            select(InstanceUserORM.group_id, func.count(InstanceUserORM.id))
            .where(InstanceUserORM.group_id.in_(group_ids))
            .group_by(InstanceUserORM.group_id)
        )
        for group_id, count in self.db.execute(stmt).all():
            counts[group_id] = count
        return counts

    def is_member(self, group_id: str, user_id: str) -> bool:
        stmt = select(InstanceUserORM.id).where(
            InstanceUserORM.group_id == group_id,
            InstanceUserORM.user_id == user_id,
        )
        return self.db.scalar(stmt) is not None

    def add_member(self, group_id: str, user_id: str, now: datetime) -> bool:
        """
        Adds ``user_id`` to the instance membership.

        The member count is incremented with a conditional update that only
        matches an open instance below its capacity, so concurrent joins are
        serialized by the database. Returns False when the user already was a
        member. Raises StateError for an ended instance and InstanceFullError
        when no slot is left.
        """
        db_instance = self.get_instance(group_id)
        if db_instance is None:
            raise NotFoundError(f"Instance does not exist: {group_id}")
        if db_instance.end_time is not None:
            raise StateError("Cannot add a user to an instance that has ended.")

        if self.is_member(group_id, user_id):
            return False

        result = self.db.execute(
            update(InstanceORM)
            .where(
                InstanceORM.group_id == group_id,
                InstanceORM.end_time.is_(None),
                or_(
                    InstanceORM.capacity.is_(None),
                    InstanceORM.member_count < InstanceORM.capacity,
                ),
            )
            .values(member_count=InstanceORM.member_count + 1)
            .execution_options(synchronize_session=False)
        )

        if result.rowcount == 0:
            db_instance = self.get_instance(group_id)
            if db_instance.end_time is not None:
                raise StateError("Cannot add a user to an instance that has ended.")
            raise InstanceFullError(
                f"Instance {group_id} is full ({db_instance.member_count}/{db_instance.capacity})"
            )

        try:
            with self.db.begin_nested():
                self.db.add(InstanceUserORM(group_id=group_id, user_id=user_id))
        except IntegrityError:
            # The same user joined concurrently; give the slot back
            self.db.execute(
                update(InstanceORM)
                .where(InstanceORM.group_id == group_id)
                .values(member_count=InstanceORM.member_count - 1)
                .execution_options(synchronize_session=False)
            )
            return False

        # Only the first join ever matches
        self.db.execute(
            update(InstanceORM)
            .where(InstanceORM.group_id == group_id, InstanceORM.start_time.is_(None))
            .values(start_time=now)
            .execution_options(synchronize_session=False)
        )
        return True

    def set_end_time(self, group_id: str, now: datetime) -> None:
        """Closes the instance; raises StateError if it was already closed."""
        result = self.db.execute(
            update(InstanceORM)
            .where(InstanceORM.group_id == group_id, InstanceORM.end_time.is_(None))
            .values(end_time=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            if self.get_instance(group_id) is None:
                raise NotFoundError(f"Instance does not exist: {group_id}")
            raise StateError(f"Instance {group_id} has already been torn down")
