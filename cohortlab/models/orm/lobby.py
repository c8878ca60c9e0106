from sqlalchemy import Column, String, DateTime, ForeignKey, PrimaryKeyConstraint
from datetime import datetime

from .base import Base


class LobbyStatusORM(Base):
    __tablename__ = "lobby_status"

    batch_id = Column(String, ForeignKey("batches.batch_id"), nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    asst_id = Column(String, ForeignKey("assignments.asst_id"), nullable=False)

    joined_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        PrimaryKeyConstraint("batch_id", "user_id", name="lobby_status_pk"),
    )
