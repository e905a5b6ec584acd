from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, List

from sqlalchemy import JSON, Column, DateTime
from sqlalchemy.types import TypeDecorator
from sqlmodel import Field, SQLModel

SCHEMA_VERSION = 1
TEMPLATE_SLOTS = range(1, 7)

SCHEMA_VERSION_KEY = "schemaVersion"
LAST_BACKUP_KEY = "lastBackupAt"


def new_id() -> str:
    return str(uuid.uuid4())


class Collection(str, Enum):
    BODY_PARTS = "bodyParts"
    EXERCISES = "exercises"
    WORKOUT_LOGS = "workoutLogs"
    SETS = "sets"
    TEMPLATES = "templates"
    META = "meta"


class UTCDateTime(TypeDecorator):
    """Stores datetimes as naive UTC and hands them back timezone-aware.

    SQLite has no timezone support, so aware values are normalised on the way in.
    Naive values are taken to be UTC already.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


class BodyPart(SQLModel, table=True):
    __tablename__ = "body_parts"

    id: str = Field(primary_key=True)
    name: str


class Exercise(SQLModel, table=True):
    __tablename__ = "exercises"

    id: str = Field(primary_key=True)
    name: str
    body_part_id: str = Field(index=True)


class WorkoutLog(SQLModel, table=True):
    __tablename__ = "workout_logs"

    id: str = Field(primary_key=True)
    exercise_id: str = Field(index=True)
    performed_at: datetime = Field(sa_column=Column(UTCDateTime, nullable=False, index=True))


class WorkoutSet(SQLModel, table=True):
    __tablename__ = "sets"

    id: str = Field(primary_key=True)
    log_id: str = Field(index=True)
    set_index: int  # 1-based display ordinal, not unique
    weight: float
    reps: int


class Template(SQLModel, table=True):
    __tablename__ = "templates"

    slot: int = Field(primary_key=True, sa_column_kwargs={"autoincrement": False})
    name: str = ""
    exercise_ids: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))


class MetaEntry(SQLModel, table=True):
    __tablename__ = "meta"

    key: str = Field(primary_key=True)
    value: Any = Field(default=None, sa_column=Column(JSON))


COLLECTION_MODELS = {
    Collection.BODY_PARTS: BodyPart,
    Collection.EXERCISES: Exercise,
    Collection.WORKOUT_LOGS: WorkoutLog,
    Collection.SETS: WorkoutSet,
    Collection.TEMPLATES: Template,
    Collection.META: MetaEntry,
}

# index name -> attribute, per collection
COLLECTION_INDEXES = {
    Collection.EXERCISES: {"by_body_part": "body_part_id"},
    Collection.WORKOUT_LOGS: {"by_exercise": "exercise_id", "by_date": "performed_at"},
    Collection.SETS: {"by_log": "log_id"},
}


def primary_key_name(model: type[SQLModel]) -> str:
    return next(iter(model.__table__.primary_key.columns)).name
