from datetime import datetime

from sqlalchemy import JSON
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base

# JSONB on PostgreSQL, generic JSON everywhere else
JSON_TYPE = JSON().with_variant(JSONB(), "postgresql")


class CustomBase:
    def __repr__(self) -> str:
        keys = ", ".join(
            f"{column.name}={getattr(self, column.name)!r}"
            for column in self.__table__.primary_key.columns
        )
        return f"{self.__class__.__name__}({keys})"

    def to_dict(self) -> dict:
        """Column values of the row, with datetimes as ISO strings."""
        data = {}
        for column in self.__table__.columns:
            value = getattr(self, column.name)
            data[column.name] = value.isoformat() if isinstance(value, datetime) else value
        return data


Base = declarative_base(cls=CustomBase)
