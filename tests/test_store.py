"""Tests for the SQLite-backed store: CRUD, indices, transactions and seeding."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from training_log.db import Store, Transaction, get_engine_url
from training_log.errors import StorageUnavailable, TransactionAborted
from training_log.models import (
    SCHEMA_VERSION,
    BodyPart,
    Collection,
    Exercise,
    MetaEntry,
    Template,
    WorkoutLog,
    WorkoutSet,
)

UTC = timezone.utc


def make_log(log_id: str, exercise_id: str = "ex-1", day: int = 1) -> WorkoutLog:
    return WorkoutLog(id=log_id, exercise_id=exercise_id, performed_at=datetime(2025, 1, day, 9, 0, tzinfo=UTC))


# ---------------------------------------------------------------------------
# Opening and seeding
# ---------------------------------------------------------------------------


class TestOpen:
    def test_sqlite_url_switches_to_aiosqlite(self) -> None:
        assert get_engine_url("sqlite:///./x.db") == "sqlite+aiosqlite:///./x.db"
        assert get_engine_url("sqlite+aiosqlite:///./x.db") == "sqlite+aiosqlite:///./x.db"

    async def test_first_open_seeds_defaults(self, store: Store) -> None:
        body_parts = await store.get_all(Collection.BODY_PARTS)
        assert [bp.name for bp in body_parts] == ["Chest", "Back", "Shoulders", "Arms", "Legs", "Abs"]
        assert len({bp.id for bp in body_parts}) == 6

        templates = await store.get_all(Collection.TEMPLATES)
        assert sorted(t.slot for t in templates) == [1, 2, 3, 4, 5, 6]
        assert all(t.name == "" and t.exercise_ids == [] for t in templates)

        assert await store.get_meta("schemaVersion") == SCHEMA_VERSION

    async def test_reopen_does_not_seed_again(self, db_url: str) -> None:
        async with await Store.open(db_url) as first:
            ids = {bp.id for bp in await first.get_all(Collection.BODY_PARTS)}
        async with await Store.open(db_url) as second:
            assert await second.count_all(Collection.BODY_PARTS) == 6
            assert {bp.id for bp in await second.get_all(Collection.BODY_PARTS)} == ids
            assert await second.seed_defaults() is False

    async def test_unseeded_store_is_empty(self, empty_store: Store) -> None:
        for collection in Collection:
            assert await empty_store.count_all(collection) == 0

    async def test_seed_names_come_from_settings(self, db_url: str, monkeypatch) -> None:
        monkeypatch.setenv("TRAINING_LOG_SEED_BODY_PARTS", '["Upper", "Lower"]')
        async with await Store.open(db_url) as s:
            assert sorted(bp.name for bp in await s.get_all(Collection.BODY_PARTS)) == ["Lower", "Upper"]

    async def test_missing_directory_is_storage_unavailable(self, tmp_path) -> None:
        url = f"sqlite:///{tmp_path / 'no' / 'such' / 'dir' / 'training.db'}"
        with pytest.raises(StorageUnavailable):
            await Store.open(url)

    async def test_failed_seed_leaves_nothing_behind(self, db_url: str, monkeypatch) -> None:
        original_put = Transaction.put

        async def failing_put(self, collection, record):
            if Collection(collection) is Collection.TEMPLATES and record.slot == 4:
                raise RuntimeError("disk full")
            return await original_put(self, collection, record)

        monkeypatch.setattr(Transaction, "put", failing_put)
        with pytest.raises(TransactionAborted):
            await Store.open(db_url)
        monkeypatch.undo()

        async with await Store.open(db_url, seed=False) as s:
            assert await s.count_all(Collection.BODY_PARTS) == 0
            assert await s.count_all(Collection.TEMPLATES) == 0
            assert await s.count_all(Collection.META) == 0


# ---------------------------------------------------------------------------
# Keyed reads and writes
# ---------------------------------------------------------------------------


class TestCrud:
    async def test_put_returns_primary_key(self, empty_store: Store) -> None:
        assert await empty_store.put(Collection.BODY_PARTS, BodyPart(id="bp-1", name="Legs")) == "bp-1"
        assert await empty_store.put(Collection.TEMPLATES, Template(slot=3, name="Push")) == 3
        assert await empty_store.put(Collection.META, MetaEntry(key="k", value={"a": 1})) == "k"

    async def test_get_by_key(self, empty_store: Store) -> None:
        await empty_store.put(Collection.EXERCISES, Exercise(id="ex-1", name="Squat", body_part_id="bp-1"))
        found = await empty_store.get_by_key(Collection.EXERCISES, "ex-1")
        assert found.name == "Squat"
        assert found.body_part_id == "bp-1"
        assert await empty_store.get_by_key(Collection.EXERCISES, "missing") is None

    async def test_put_replaces_whole_record(self, empty_store: Store) -> None:
        await empty_store.put(Collection.TEMPLATES, Template(slot=2, name="Pull", exercise_ids=["a", "b"]))
        await empty_store.put(Collection.TEMPLATES, Template(slot=2, name="Legs"))
        replaced = await empty_store.get_by_key(Collection.TEMPLATES, 2)
        assert replaced.name == "Legs"
        assert replaced.exercise_ids == []
        assert await empty_store.count_all(Collection.TEMPLATES) == 1

    async def test_put_is_idempotent(self, empty_store: Store) -> None:
        record = BodyPart(id="bp-1", name="Legs")
        await empty_store.put(Collection.BODY_PARTS, record)
        await empty_store.put(Collection.BODY_PARTS, BodyPart(id="bp-1", name="Legs"))
        assert await empty_store.count_all(Collection.BODY_PARTS) == 1

    async def test_delete(self, empty_store: Store) -> None:
        await empty_store.put(Collection.BODY_PARTS, BodyPart(id="bp-1", name="Legs"))
        await empty_store.delete(Collection.BODY_PARTS, "bp-1")
        assert await empty_store.get_by_key(Collection.BODY_PARTS, "bp-1") is None

    async def test_delete_missing_is_noop(self, empty_store: Store) -> None:
        await empty_store.delete(Collection.BODY_PARTS, "never-existed")
        assert await empty_store.count_all(Collection.BODY_PARTS) == 0

    async def test_collection_names_accept_wire_strings(self, empty_store: Store) -> None:
        await empty_store.put("bodyParts", BodyPart(id="bp-1", name="Legs"))
        assert len(await empty_store.get_all("bodyParts")) == 1

    async def test_unknown_collection(self, empty_store: Store) -> None:
        with pytest.raises(ValueError, match="unknown collection"):
            await empty_store.get_all("users")

    async def test_wrong_record_type(self, empty_store: Store) -> None:
        with pytest.raises(TypeError):
            await empty_store.put(Collection.EXERCISES, BodyPart(id="bp-1", name="Legs"))

    @pytest.mark.parametrize(
        "collection, record",
        [
            (Collection.SETS, WorkoutSet(id="s-1", log_id="l", set_index=0, weight=5.0, reps=1)),
            (Collection.SETS, WorkoutSet(id="s-1", log_id="l", set_index=1, weight=-5.0, reps=1)),
            (Collection.SETS, WorkoutSet(id="s-1", log_id="l", set_index=1, weight=5.0, reps=-1)),
            (Collection.TEMPLATES, Template(slot=7, name="Extra", exercise_ids=[])),
            (Collection.TEMPLATES, Template(slot=0, name="", exercise_ids=[])),
        ],
    )
    async def test_out_of_range_record(self, empty_store: Store, collection: Collection, record) -> None:
        with pytest.raises(ValueError):
            await empty_store.put(collection, record)
        assert await empty_store.count_all(collection) == 0

    async def test_out_of_range_record_aborts_transaction(self, empty_store: Store) -> None:
        with pytest.raises(TransactionAborted) as excinfo:
            async with empty_store.transaction([Collection.SETS]) as tx:
                await tx.put(Collection.SETS, WorkoutSet(id="s-1", log_id="l", set_index=1, weight=5.0, reps=1))
                await tx.put(Collection.SETS, WorkoutSet(id="s-2", log_id="l", set_index=0, weight=5.0, reps=1))
        assert isinstance(excinfo.value.__cause__, ValueError)
        assert await empty_store.count_all(Collection.SETS) == 0

    async def test_meta_helpers(self, empty_store: Store) -> None:
        assert await empty_store.get_meta("lastBackupAt") is None
        assert await empty_store.get_meta("lastBackupAt", "never") == "never"
        await empty_store.set_meta("lastBackupAt", "2025-01-10T08:00:00+00:00")
        assert await empty_store.get_meta("lastBackupAt") == "2025-01-10T08:00:00+00:00"

    async def test_timestamps_come_back_as_utc(self, empty_store: Store) -> None:
        tokyo = timezone(timedelta(hours=9))
        await empty_store.put(
            Collection.WORKOUT_LOGS,
            WorkoutLog(id="log-1", exercise_id="ex-1", performed_at=datetime(2025, 1, 10, 9, 0, tzinfo=tokyo)),
        )
        await empty_store.put(
            Collection.WORKOUT_LOGS,
            WorkoutLog(id="log-2", exercise_id="ex-1", performed_at=datetime(2025, 1, 10, 9, 0)),
        )
        aware = await empty_store.get_by_key(Collection.WORKOUT_LOGS, "log-1")
        naive = await empty_store.get_by_key(Collection.WORKOUT_LOGS, "log-2")
        assert aware.performed_at == datetime(2025, 1, 10, 0, 0, tzinfo=UTC)
        assert aware.performed_at.tzinfo == UTC
        assert naive.performed_at == datetime(2025, 1, 10, 9, 0, tzinfo=UTC)


# ---------------------------------------------------------------------------
# Secondary indices
# ---------------------------------------------------------------------------


class TestIndexes:
    async def test_exercises_by_body_part(self, empty_store: Store) -> None:
        await empty_store.put(Collection.EXERCISES, Exercise(id="ex-1", name="Squat", body_part_id="legs"))
        await empty_store.put(Collection.EXERCISES, Exercise(id="ex-2", name="Bench", body_part_id="chest"))
        await empty_store.put(Collection.EXERCISES, Exercise(id="ex-3", name="Lunge", body_part_id="legs"))
        found = await empty_store.query_by_index(Collection.EXERCISES, "by_body_part", "legs")
        assert sorted(ex.id for ex in found) == ["ex-1", "ex-3"]

    async def test_logs_by_exercise_and_date(self, empty_store: Store) -> None:
        await empty_store.put(Collection.WORKOUT_LOGS, make_log("log-1", "ex-1", day=1))
        await empty_store.put(Collection.WORKOUT_LOGS, make_log("log-2", "ex-2", day=1))
        await empty_store.put(Collection.WORKOUT_LOGS, make_log("log-3", "ex-1", day=5))

        by_exercise = await empty_store.query_by_index(Collection.WORKOUT_LOGS, "by_exercise", "ex-1")
        assert sorted(log.id for log in by_exercise) == ["log-1", "log-3"]

        by_date = await empty_store.query_by_index(
            Collection.WORKOUT_LOGS, "by_date", datetime(2025, 1, 1, 9, 0, tzinfo=UTC)
        )
        assert sorted(log.id for log in by_date) == ["log-1", "log-2"]

    async def test_sets_by_log(self, empty_store: Store) -> None:
        for i, log_id in enumerate(["log-1", "log-1", "log-2"], start=1):
            await empty_store.put(
                Collection.SETS, WorkoutSet(id=f"set-{i}", log_id=log_id, set_index=i, weight=20.0, reps=5)
            )
        found = await empty_store.query_by_index(Collection.SETS, "by_log", "log-1")
        assert sorted(s.id for s in found) == ["set-1", "set-2"]
        assert await empty_store.query_by_index(Collection.SETS, "by_log", "nope") == []

    async def test_unknown_index(self, empty_store: Store) -> None:
        with pytest.raises(ValueError, match="no index"):
            await empty_store.query_by_index(Collection.SETS, "by_weight", 20)
        with pytest.raises(ValueError):
            await empty_store.query_by_index(Collection.BODY_PARTS, "by_log", "x")


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


class TestTransactions:
    async def test_commit_makes_writes_visible(self, empty_store: Store) -> None:
        async with empty_store.transaction([Collection.WORKOUT_LOGS, Collection.SETS]) as tx:
            await tx.put(Collection.WORKOUT_LOGS, make_log("log-1"))
            await tx.put(Collection.SETS, WorkoutSet(id="s-1", log_id="log-1", set_index=1, weight=50, reps=5))
        assert await empty_store.count_all(Collection.WORKOUT_LOGS) == 1
        assert await empty_store.count_all(Collection.SETS) == 1

    async def test_reads_inside_see_pending_writes(self, empty_store: Store) -> None:
        async with empty_store.transaction([Collection.SETS]) as tx:
            await tx.put(Collection.SETS, WorkoutSet(id="s-1", log_id="log-1", set_index=1, weight=50, reps=5))
            assert await tx.get_by_key(Collection.SETS, "s-1") is not None
            assert len(await tx.query_by_index(Collection.SETS, "by_log", "log-1")) == 1
            assert await tx.count_all(Collection.SETS) == 1
            await tx.delete(Collection.SETS, "s-1")
            assert await tx.get_all(Collection.SETS) == []

    async def test_failure_rolls_back_everything(self, empty_store: Store) -> None:
        await empty_store.put(Collection.BODY_PARTS, BodyPart(id="bp-1", name="Legs"))

        with pytest.raises(TransactionAborted) as excinfo:
            async with empty_store.transaction([Collection.BODY_PARTS, Collection.EXERCISES]) as tx:
                await tx.put(Collection.EXERCISES, Exercise(id="ex-1", name="Squat", body_part_id="bp-1"))
                await tx.delete(Collection.BODY_PARTS, "bp-1")
                raise RuntimeError("boom")

        assert isinstance(excinfo.value.__cause__, RuntimeError)
        assert await empty_store.get_by_key(Collection.BODY_PARTS, "bp-1") is not None
        assert await empty_store.count_all(Collection.EXERCISES) == 0

    async def test_collection_outside_scope_aborts(self, empty_store: Store) -> None:
        with pytest.raises(TransactionAborted):
            async with empty_store.transaction([Collection.SETS]) as tx:
                await tx.put(Collection.SETS, WorkoutSet(id="s-1", log_id="l", set_index=1, weight=1, reps=1))
                await tx.put(Collection.BODY_PARTS, BodyPart(id="bp-1", name="Legs"))
        assert await empty_store.count_all(Collection.SETS) == 0

    async def test_empty_scope_rejected(self, empty_store: Store) -> None:
        with pytest.raises(ValueError):
            async with empty_store.transaction([]):
                pass

    async def test_run_transaction_returns_body_result(self, empty_store: Store) -> None:
        async def body(tx: Transaction) -> int:
            await tx.put(Collection.BODY_PARTS, BodyPart(id="bp-1", name="Legs"))
            await tx.put(Collection.BODY_PARTS, BodyPart(id="bp-2", name="Back"))
            return await tx.count_all(Collection.BODY_PARTS)

        assert await empty_store.run_transaction([Collection.BODY_PARTS], body) == 2
        assert await empty_store.count_all(Collection.BODY_PARTS) == 2

    async def test_run_transaction_failure(self, empty_store: Store) -> None:
        async def body(tx: Transaction) -> None:
            await tx.put(Collection.BODY_PARTS, BodyPart(id="bp-1", name="Legs"))
            raise ValueError("bad input")

        with pytest.raises(TransactionAborted):
            await empty_store.run_transaction([Collection.BODY_PARTS], body)
        assert await empty_store.count_all(Collection.BODY_PARTS) == 0

    async def test_concurrent_transactions_do_not_interleave(self, empty_store: Store) -> None:
        await empty_store.set_meta("counter", 0)

        async def bump(tx: Transaction) -> None:
            entry = await tx.get_by_key(Collection.META, "counter")
            await asyncio.sleep(0)
            await tx.put(Collection.META, MetaEntry(key="counter", value=entry.value + 1))

        await asyncio.gather(*(empty_store.run_transaction([Collection.META], bump) for _ in range(10)))

        assert await empty_store.get_meta("counter") == 10
