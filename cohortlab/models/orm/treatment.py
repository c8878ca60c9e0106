from sqlalchemy import Column, String

from .base import Base, JSON_TYPE


class TreatmentORM(Base):
    __tablename__ = "treatments"

    name = Column(String, primary_key=True, index=True)
    params = Column(JSON_TYPE, default=dict, nullable=False)
