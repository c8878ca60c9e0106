from sqlalchemy import Column, String, Integer, DateTime
from datetime import datetime

from .base import Base, JSON_TYPE


class LogORM(Base):
    __tablename__ = "logs"

    log_id = Column(Integer, primary_key=True, autoincrement=True)
    group_id = Column(String, nullable=True, index=True)

    # Set for batch level events such as lobby signals
    batch_id = Column(String, nullable=True, index=True)

    # "initialized", "teardown", or any application defined kind
    kind = Column(String, nullable=True, index=True)

    timestamp = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    payload = Column(JSON_TYPE, default=dict, nullable=False)
