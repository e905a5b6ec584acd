from __future__ import annotations

import logging
from datetime import datetime, timezone, tzinfo
from typing import Iterable, List, Optional, Sequence, Tuple

from ..db import Store
from ..models import TEMPLATE_SLOTS, Collection, Exercise, Template, WorkoutLog, WorkoutSet, new_id
from .aggregations import (
    ExerciseWithDetails,
    Granularity,
    LogWithSets,
    PeriodVolume,
    body_part_volume_by_period,
    enrich_log,
    exercise_details,
)

logger = logging.getLogger("training_log.services.workouts")

MAX_SETS = 5


async def create_exercise(store: Store, name: str, body_part_id: str) -> Exercise:
    name = name.strip()
    if not name:
        raise ValueError("exercise name must not be empty")
    exercise = Exercise(id=new_id(), name=name, body_part_id=body_part_id)
    await store.put(Collection.EXERCISES, exercise)
    return exercise


async def record_workout(
    store: Store,
    exercise_id: str,
    entries: Sequence[Tuple[float, int]],
    performed_at: Optional[datetime] = None,
) -> LogWithSets:
    """Write one session for an exercise: a log plus its sets, atomically.

    ``entries`` are (weight, reps) rows in display order. Rows without a positive
    weight and a positive rep count are dropped before set indices are assigned.
    """
    if len(entries) > MAX_SETS:
        raise ValueError(f"at most {MAX_SETS} sets per session, got {len(entries)}")
    valid = [(float(weight), int(reps)) for weight, reps in entries if weight > 0 and reps > 0]
    if not valid:
        raise ValueError("a session needs at least one set with weight and reps")

    log = WorkoutLog(id=new_id(), exercise_id=exercise_id, performed_at=performed_at or datetime.now(timezone.utc))
    sets = [
        WorkoutSet(id=new_id(), log_id=log.id, set_index=i, weight=weight, reps=reps)
        for i, (weight, reps) in enumerate(valid, start=1)
    ]
    async with store.transaction([Collection.WORKOUT_LOGS, Collection.SETS]) as tx:
        await tx.put(Collection.WORKOUT_LOGS, log)
        for workout_set in sets:
            await tx.put(Collection.SETS, workout_set)
    logger.info("recorded %d sets for exercise %s", len(sets), exercise_id)
    return enrich_log(log, sets)


async def delete_workout(store: Store, log_id: str) -> int:
    """Remove a log together with its sets. Returns how many sets went with it."""
    async with store.transaction([Collection.WORKOUT_LOGS, Collection.SETS]) as tx:
        sets = await tx.query_by_index(Collection.SETS, "by_log", log_id)
        for workout_set in sets:
            await tx.delete(Collection.SETS, workout_set.id)
        await tx.delete(Collection.WORKOUT_LOGS, log_id)
    return len(sets)


async def list_templates(store: Store) -> List[Template]:
    stored = {t.slot: t for t in await store.get_all(Collection.TEMPLATES)}
    return [stored.get(slot) or Template(slot=slot, name="", exercise_ids=[]) for slot in TEMPLATE_SLOTS]


async def update_template(store: Store, slot: int, name: str, exercise_ids: Iterable[str]) -> Template:
    if slot not in TEMPLATE_SLOTS:
        raise ValueError(f"template slot must be between 1 and 6, got {slot}")
    template = Template(slot=slot, name=name.strip(), exercise_ids=list(exercise_ids))
    await store.put(Collection.TEMPLATES, template)
    return template


async def load_exercise_details(store: Store, exercise_id: str, n: int = 3) -> Optional[ExerciseWithDetails]:
    async with store.transaction(
        [Collection.EXERCISES, Collection.BODY_PARTS, Collection.WORKOUT_LOGS, Collection.SETS]
    ) as tx:
        exercise = await tx.get_by_key(Collection.EXERCISES, exercise_id)
        if exercise is None:
            return None
        body_part = await tx.get_by_key(Collection.BODY_PARTS, exercise.body_part_id)
        logs = await tx.query_by_index(Collection.WORKOUT_LOGS, "by_exercise", exercise_id)
        sets: List[WorkoutSet] = []
        for log in logs:
            sets.extend(await tx.query_by_index(Collection.SETS, "by_log", log.id))
    return exercise_details(exercise, [body_part] if body_part else [], logs, sets, n)


async def load_volume_by_period(
    store: Store, granularity: Granularity, tz: Optional[tzinfo] = None
) -> List[PeriodVolume]:
    # One transaction so the four collections are read as a consistent view
    async with store.transaction(
        [Collection.WORKOUT_LOGS, Collection.SETS, Collection.EXERCISES, Collection.BODY_PARTS]
    ) as tx:
        logs = await tx.get_all(Collection.WORKOUT_LOGS)
        sets = await tx.get_all(Collection.SETS)
        exercises = await tx.get_all(Collection.EXERCISES)
        body_parts = await tx.get_all(Collection.BODY_PARTS)
    return body_part_volume_by_period(logs, sets, exercises, body_parts, granularity, tz)
