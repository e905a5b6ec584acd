"""Backup documents: export the whole store and parse it back.

Wire shape (camelCase keys)::

    {
      "schemaVersion": 1,
      "exportedAt": "2025-01-10T08:00:00Z",
      "data": {
        "bodyParts": [...], "exercises": [...], "workoutLogs": [...],
        "sets": [...], "templates": [...], "meta": [...]
      }
    }
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, List, Mapping, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from ..db import Store
from ..errors import ValidationError
from ..models import (
    LAST_BACKUP_KEY,
    SCHEMA_VERSION,
    BodyPart,
    Collection,
    Exercise,
    MetaEntry,
    Template,
    WorkoutLog,
    WorkoutSet,
)
from ..settings import get_settings
from .aggregations import days_since_backup

logger = logging.getLogger("training_log.services.snapshot")


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class BodyPartRecord(WireModel):
    id: str
    name: str


class ExerciseRecord(WireModel):
    id: str
    name: str
    body_part_id: str


class WorkoutLogRecord(WireModel):
    id: str
    exercise_id: str
    performed_at: datetime = Field(
        validation_alias=AliasChoices("performedAt", "performedAtISO", "performed_at"),
        serialization_alias="performedAt",
    )


class WorkoutSetRecord(WireModel):
    id: str
    log_id: str
    set_index: int = Field(ge=1)
    weight: float = Field(ge=0)
    reps: int = Field(ge=0)


class TemplateRecord(WireModel):
    slot: int = Field(ge=1, le=6)
    name: str = ""
    exercise_ids: List[str] = []


class MetaRecord(WireModel):
    key: str
    value: Any = None


class SnapshotData(WireModel):
    body_parts: List[BodyPartRecord]
    exercises: List[ExerciseRecord]
    workout_logs: List[WorkoutLogRecord]
    sets: List[WorkoutSetRecord]
    templates: List[TemplateRecord]
    meta: List[MetaRecord]


class Snapshot(WireModel):
    schema_version: int
    exported_at: Optional[datetime] = None
    data: SnapshotData


# collection -> (wire record model, table model, attribute on SnapshotData)
SNAPSHOT_LAYOUT = {
    Collection.BODY_PARTS: (BodyPartRecord, BodyPart, "body_parts"),
    Collection.EXERCISES: (ExerciseRecord, Exercise, "exercises"),
    Collection.WORKOUT_LOGS: (WorkoutLogRecord, WorkoutLog, "workout_logs"),
    Collection.SETS: (WorkoutSetRecord, WorkoutSet, "sets"),
    Collection.TEMPLATES: (TemplateRecord, Template, "templates"),
    Collection.META: (MetaRecord, MetaEntry, "meta"),
}


def snapshot_records(snapshot: Snapshot, collection: Collection) -> List[Any]:
    """The document's records for one collection, as table models ready to store."""
    _, model, attr = SNAPSHOT_LAYOUT[collection]
    return [model(**item.model_dump()) for item in getattr(snapshot.data, attr)]


async def export_snapshot(store: Store, now: Optional[datetime] = None) -> Snapshot:
    """Read the whole store into a snapshot and stamp ``lastBackupAt``.

    The stamp is written first, in the same transaction as the reads, so the
    returned document matches the store exactly once the export is done.
    """
    exported_at = now or datetime.now(timezone.utc)
    contents = {}
    async with store.transaction(list(Collection)) as tx:
        await tx.put(Collection.META, MetaEntry(key=LAST_BACKUP_KEY, value=exported_at.isoformat()))
        for collection, (record_model, _, attr) in SNAPSHOT_LAYOUT.items():
            rows = await tx.get_all(collection)
            contents[attr] = [record_model.model_validate(row, from_attributes=True) for row in rows]

    snapshot = Snapshot(schema_version=SCHEMA_VERSION, exported_at=exported_at, data=SnapshotData(**contents))
    logger.info(
        "exported snapshot: %s",
        ", ".join(f"{c.value}={len(contents[attr])}" for c, (_, _, attr) in SNAPSHOT_LAYOUT.items()),
    )
    return snapshot


def dump_snapshot(snapshot: Snapshot) -> bytes:
    return snapshot.model_dump_json(by_alias=True, indent=2).encode("utf-8")


def parse_snapshot(raw: Union[bytes, str, Mapping[str, Any]]) -> Snapshot:
    """Validate a backup document.

    Raises ``ValidationError`` when the document is not JSON, lacks
    ``schemaVersion`` or one of the six collection arrays, carries malformed
    records, or declares a schema version this code does not know.
    """
    try:
        if isinstance(raw, (bytes, bytearray, str)):
            snapshot = Snapshot.model_validate_json(raw)
        else:
            snapshot = Snapshot.model_validate(raw)
    except PydanticValidationError as exc:
        raise ValidationError(f"invalid backup file: {exc}") from exc
    return check_schema_version(snapshot)


def check_schema_version(snapshot: Snapshot) -> Snapshot:
    if not 1 <= snapshot.schema_version <= SCHEMA_VERSION:
        raise ValidationError(
            f"invalid backup file: unsupported schema version {snapshot.schema_version}"
        )
    return snapshot


def backup_filename(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"training-backup-{now.date().isoformat()}.json"


async def write_backup(store: Store, directory: Union[str, Path], now: Optional[datetime] = None) -> Path:
    snapshot = await export_snapshot(store, now)
    path = Path(directory) / backup_filename(snapshot.exported_at)
    path.write_bytes(dump_snapshot(snapshot))
    logger.info("backup written to %s", path)
    return path


async def backup_due(store: Store, now: Optional[datetime] = None) -> bool:
    """True if no backup was ever taken or the last one is too old."""
    days = days_since_backup(await store.get_meta(LAST_BACKUP_KEY), now)
    return days is None or days >= get_settings().backup_warning_days
