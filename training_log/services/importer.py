from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Mapping, Union

from pydantic import BaseModel, Field

from ..db import Store, Transaction
from ..models import Collection, Template
from .snapshot import Snapshot, check_schema_version, parse_snapshot, snapshot_records

logger = logging.getLogger("training_log.services.importer")

# Records keyed by their own id: present locally means skip.
KEYED_COLLECTIONS = (Collection.BODY_PARTS, Collection.EXERCISES, Collection.WORKOUT_LOGS, Collection.SETS)


def _zero_counts() -> Dict[str, int]:
    return {c.value: 0 for c in Collection}


class ImportResult(BaseModel):
    added: Dict[str, int] = Field(default_factory=_zero_counts)
    skipped: Dict[str, int] = Field(default_factory=_zero_counts)

    @property
    def total_added(self) -> int:
        return sum(self.added.values())

    @property
    def total_skipped(self) -> int:
        return sum(self.skipped.values())


def is_empty_template(template: Template) -> bool:
    return not template.name and not template.exercise_ids


async def _merge_keyed(tx: Transaction, collection: Collection, records, result: ImportResult) -> None:
    for record in records:
        if await tx.get_by_key(collection, record.id) is None:
            await tx.put(collection, record)
            result.added[collection.value] += 1
        else:
            result.skipped[collection.value] += 1


async def _merge_templates(tx: Transaction, templates, result: ImportResult) -> None:
    for template in templates:
        local = await tx.get_by_key(Collection.TEMPLATES, template.slot)
        # An empty incoming template never replaces an empty slot, or re-imports would keep "adding" it
        if local is None or (is_empty_template(local) and not is_empty_template(template)):
            await tx.put(Collection.TEMPLATES, template)
            result.added[Collection.TEMPLATES.value] += 1
        else:
            result.skipped[Collection.TEMPLATES.value] += 1


async def _merge_meta(tx: Transaction, entries, result: ImportResult) -> None:
    for entry in entries:
        if await tx.get_by_key(Collection.META, entry.key) is None:
            await tx.put(Collection.META, entry)
            result.added[Collection.META.value] += 1
        else:
            result.skipped[Collection.META.value] += 1


async def merge(store: Store, document: Union[Snapshot, bytes, str, Mapping[str, Any]]) -> ImportResult:
    """Add whatever the document has that the store lacks.

    Local records are never overwritten or deleted, so importing the same
    document twice adds nothing the second time. The merge runs in a single
    transaction; on failure ``TransactionAborted`` is raised and nothing is
    written. A malformed document raises ``ValidationError`` before the store
    is touched.
    """
    if isinstance(document, Snapshot):
        snapshot = check_schema_version(document)
    else:
        snapshot = parse_snapshot(document)
    result = ImportResult()

    async with store.transaction(list(Collection)) as tx:
        for collection in KEYED_COLLECTIONS:
            await _merge_keyed(tx, collection, snapshot_records(snapshot, collection), result)
        await _merge_templates(tx, snapshot_records(snapshot, Collection.TEMPLATES), result)
        await _merge_meta(tx, snapshot_records(snapshot, Collection.META), result)

    logger.info(
        "merged snapshot: %s",
        ", ".join(f"{name} +{result.added[name]}/skip {result.skipped[name]}" for name in result.added),
        extra={"training_log_added": result.added, "training_log_skipped": result.skipped},
    )
    return result


async def merge_file(store: Store, path: Union[str, Path]) -> ImportResult:
    return await merge(store, Path(path).read_bytes())
