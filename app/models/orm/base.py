from datetime import datetime, timezone

from sqlalchemy import MetaData
from sqlalchemy.orm import declarative_base

# Stable constraint names so the unique constraints can be referenced by name.
NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CustomBase:
    def __repr__(self) -> str:
        class_name = self.__class__.__name__
        columns = [(c.name, getattr(self, c.name)) for c in self.__table__.columns]
        column_str = ", ".join(f"{name}={value!r}" for name, value in columns)
        return f"{class_name}({column_str})"

    def to_dict(self) -> dict:
        """Converts the ORM object's columns to a dictionary."""
        return {column.name: getattr(self, column.name) for column in self.__table__.columns}


Base = declarative_base(cls=CustomBase, metadata=MetaData(naming_convention=NAMING_CONVENTION))
