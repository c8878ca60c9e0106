# repositories/lobby_repo.py
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from cohortlab.models.orm.lobby import LobbyStatusORM


class LobbyRepository:
    def __init__(self, db: Session):
        self.db = db

    def add_user(self, batch_id: str, user_id: str, asst_id: str) -> LobbyStatusORM:
        """Puts the user in the batch lobby; re-adding only refreshes the assignment."""
        entry = self.db.get(LobbyStatusORM, (batch_id, user_id))
        if entry is None:
            try:
                with self.db.begin_nested():
                    entry = LobbyStatusORM(
                        batch_id=batch_id,
                        user_id=user_id,
                        asst_id=asst_id,
                        joined_at=datetime.utcnow(),
                    )
                    self.db.add(entry)
            except IntegrityError:
                entry = self.db.get(LobbyStatusORM, (batch_id, user_id), populate_existing=True)

        entry.asst_id = asst_id
        self.db.flush()
        return entry

    def remove_users(self, batch_id: str, user_ids: list[str]) -> list[str]:
        """Removes the users from the lobby, returning the ones that were present."""
        if not user_ids:
            return []

        stmt = (
            delete(LobbyStatusORM)
            .where(
                LobbyStatusORM.batch_id == batch_id,
                LobbyStatusORM.user_id.in_(user_ids),
            )
            .returning(LobbyStatusORM.user_id)
            .execution_options(synchronize_session=False)
        )
        return list(self.db.scalars(stmt).all())

    def get_entries(self, batch_id: str) -> list[LobbyStatusORM]:
        stmt = (
            select(LobbyStatusORM)
            .where(LobbyStatusORM.batch_id == batch_id)
            .order_by(LobbyStatusORM.joined_at)
        )
        return list(self.db.scalars(stmt).all())

    def get_entry(self, batch_id: str, user_id: str) -> Optional[LobbyStatusORM]:
        return self.db.get(LobbyStatusORM, (batch_id, user_id))

    def get_batch_ids_for_user(self, user_id: str) -> list[str]:
        stmt = select(LobbyStatusORM.batch_id).where(LobbyStatusORM.user_id == user_id)
        return list(self.db.scalars(stmt).all())
