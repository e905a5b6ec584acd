"""Pure functions deriving volume statistics from raw records.

Nothing here touches the store. Inputs are whatever the caller already read:
records whose foreign keys point nowhere are left out of the results rather
than raising.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import date, datetime, timezone, tzinfo
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence

from pydantic import BaseModel

from ..models import BodyPart, Exercise, WorkoutLog, WorkoutSet


class Granularity(str, Enum):
    WEEK = "week"
    MONTH = "month"


class SetWithVolume(BaseModel):
    id: str
    log_id: str
    set_index: int
    weight: float
    reps: int
    volume: float


class LogWithSets(BaseModel):
    id: str
    exercise_id: str
    performed_at: datetime
    sets: List[SetWithVolume] = []
    total_volume: float = 0.0


class BodyPartVolume(BaseModel):
    body_part_id: str
    body_part_name: str
    volume: float


class PeriodVolume(BaseModel):
    period_label: str  # "2025-W03" or "2025-01"
    body_parts: List[BodyPartVolume]


class ExerciseWithDetails(BaseModel):
    id: str
    name: str
    body_part_id: str
    body_part_name: str
    max_weight: float
    recent_logs: List[LogWithSets]


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def set_volume(workout_set: WorkoutSet) -> float:
    return workout_set.weight * workout_set.reps


def enrich_log(log: WorkoutLog, all_sets: Iterable[WorkoutSet]) -> LogWithSets:
    """Attach the log's own sets, ordered by set index, with per-set and total volume."""
    log_sets = sorted((s for s in all_sets if s.log_id == log.id), key=lambda s: s.set_index)
    with_volume = [
        SetWithVolume(
            id=s.id,
            log_id=s.log_id,
            set_index=s.set_index,
            weight=s.weight,
            reps=s.reps,
            volume=set_volume(s),
        )
        for s in log_sets
    ]
    return LogWithSets(
        id=log.id,
        exercise_id=log.exercise_id,
        performed_at=log.performed_at,
        sets=with_volume,
        total_volume=sum(s.volume for s in with_volume),
    )


def max_weight(sets: Iterable[WorkoutSet]) -> float:
    return max((s.weight for s in sets), default=0.0)


def recent_logs(logs: Iterable[WorkoutLog], all_sets: Sequence[WorkoutSet], n: int = 3) -> List[LogWithSets]:
    if n <= 0:
        return []
    # sorted() is stable with reverse=True, so equal timestamps keep input order
    ordered = sorted(logs, key=lambda log: _as_utc(log.performed_at), reverse=True)
    return [enrich_log(log, all_sets) for log in ordered[:n]]


def period_key(timestamp: date, granularity: Granularity, tz: Optional[tzinfo] = None) -> str:
    """Label the period a timestamp falls in.

    Weeks follow ISO-8601 as implemented by ``isocalendar()``: the label carries
    the ISO year, so 2024-12-30 is ``2025-W01`` and 2021-01-01 is ``2020-W53``.
    Months are ``YYYY-MM`` of the calendar date.
    """
    if tz is not None and isinstance(timestamp, datetime):
        timestamp = _as_utc(timestamp).astimezone(tz)
    granularity = Granularity(granularity)
    if granularity is Granularity.WEEK:
        iso = timestamp.isocalendar()
        return f"{iso.year}-W{iso.week:02d}"
    return f"{timestamp.year}-{timestamp.month:02d}"


def body_part_volume_by_period(
    logs: Iterable[WorkoutLog],
    sets: Iterable[WorkoutSet],
    exercises: Iterable[Exercise],
    body_parts: Sequence[BodyPart],
    granularity: Granularity,
    tz: Optional[tzinfo] = None,
) -> List[PeriodVolume]:
    """Sum log volume per body part per period.

    Every period lists every known body part, zero-filled, in body part order.
    Periods come back in ascending label order, which is chronological for both
    granularities. Logs whose exercise is unknown are skipped.
    """
    exercise_map = {ex.id: ex for ex in exercises}
    sets_by_log: Dict[str, List[WorkoutSet]] = defaultdict(list)
    for s in sets:
        sets_by_log[s.log_id].append(s)

    periods: Dict[str, Dict[str, float]] = {}
    for log in logs:
        exercise = exercise_map.get(log.exercise_id)
        if exercise is None:
            continue
        volume = sum(set_volume(s) for s in sets_by_log.get(log.id, ()))
        bucket = periods.setdefault(period_key(log.performed_at, granularity, tz), defaultdict(float))
        bucket[exercise.body_part_id] += volume

    return [
        PeriodVolume(
            period_label=label,
            body_parts=[
                BodyPartVolume(body_part_id=bp.id, body_part_name=bp.name, volume=periods[label].get(bp.id, 0.0))
                for bp in body_parts
            ],
        )
        for label in sorted(periods)
    ]


def body_part_volume_by_week(logs, sets, exercises, body_parts, tz: Optional[tzinfo] = None) -> List[PeriodVolume]:
    return body_part_volume_by_period(logs, sets, exercises, body_parts, Granularity.WEEK, tz)


def body_part_volume_by_month(logs, sets, exercises, body_parts, tz: Optional[tzinfo] = None) -> List[PeriodVolume]:
    return body_part_volume_by_period(logs, sets, exercises, body_parts, Granularity.MONTH, tz)


def exercise_details(
    exercise: Exercise,
    body_parts: Iterable[BodyPart],
    logs: Iterable[WorkoutLog],
    sets: Iterable[WorkoutSet],
    n: int = 3,
) -> ExerciseWithDetails:
    """Max weight and recent history for one exercise.

    ``logs`` and ``sets`` may cover other exercises too; only this exercise's
    logs and the sets belonging to them are used.
    """
    own_logs = [log for log in logs if log.exercise_id == exercise.id]
    log_ids = {log.id for log in own_logs}
    own_sets = [s for s in sets if s.log_id in log_ids]
    body_part_name = next((bp.name for bp in body_parts if bp.id == exercise.body_part_id), "")
    return ExerciseWithDetails(
        id=exercise.id,
        name=exercise.name,
        body_part_id=exercise.body_part_id,
        body_part_name=body_part_name,
        max_weight=max_weight(own_sets),
        recent_logs=recent_logs(own_logs, own_sets, n),
    )


def search_exercises(exercises: Iterable[Exercise], body_parts: Iterable[BodyPart], query: str) -> List[Exercise]:
    """Case-insensitive substring match on the exercise or its body part name."""
    q = query.strip().lower()
    if not q:
        return list(exercises)
    names = {bp.id: bp.name.lower() for bp in body_parts}
    return [ex for ex in exercises if q in ex.name.lower() or q in names.get(ex.body_part_id, "")]


def group_by_body_part(
    exercises: Iterable[Exercise], body_parts: Iterable[BodyPart]
) -> List[tuple[BodyPart, List[Exercise]]]:
    grouped: Dict[str, List[Exercise]] = defaultdict(list)
    for ex in exercises:
        grouped[ex.body_part_id].append(ex)
    return [(bp, grouped[bp.id]) for bp in body_parts if grouped.get(bp.id)]


def days_since_backup(last_backup: Optional[datetime | str], now: Optional[datetime] = None) -> Optional[int]:
    if not last_backup:
        return None
    if isinstance(last_backup, str):
        last_backup = datetime.fromisoformat(last_backup.replace("Z", "+00:00"))
    now = now or datetime.now(timezone.utc)
    return (_as_utc(now) - _as_utc(last_backup)).days
