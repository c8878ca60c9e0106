# repositories/log_repo.py
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from cohortlab.models.orm.log import LogORM


class LogRepository:
    def __init__(self, db: Session):
        self.db = db

    def create_log(
        self,
        group_id: Optional[str],
        kind: Optional[str],
        payload: dict,
        timestamp: Optional[datetime] = None,
        batch_id: Optional[str] = None,
    ) -> LogORM:
        db_log = LogORM(
            group_id=group_id,
            batch_id=batch_id,
            kind=kind,
            payload=payload,
            timestamp=timestamp or datetime.utcnow(),
        )
        self.db.add(db_log)
        self.db.flush()
        return db_log

    def get_logs(
        self,
        group_id: Optional[str] = None,
        kind: Optional[str] = None,
        batch_id: Optional[str] = None,
    ) -> list[LogORM]:
        """Log entries in write order, optionally filtered by group, batch and kind."""
        stmt = select(LogORM)

        if group_id is not None:
            stmt = stmt.where(LogORM.group_id == group_id)

        if batch_id is not None:
            stmt = stmt.where(LogORM.batch_id == batch_id)

        if kind is not None:
            stmt = stmt.where(LogORM.kind == kind)

        return list(self.db.scalars(stmt.order_by(LogORM.log_id)).all())

    def get_last_log(self, batch_id: str, kind: str) -> Optional[LogORM]:
        stmt = (
            select(LogORM)
            .where(LogORM.batch_id == batch_id, LogORM.kind == kind)
            .order_by(LogORM.log_id.desc())
        )
        return self.db.scalars(stmt).first()
