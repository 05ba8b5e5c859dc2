"""
Document store on SQLite: filters, update operators, upserts, aggregation.
"""
from __future__ import annotations

import asyncio
import shutil
from datetime import datetime, timedelta, timezone

import aiosqlite
import pytest

from productivity_tracker.domain.common.errors import PersistenceError
from productivity_tracker.infra.db import codec
from productivity_tracker.infra.db.connection import Database
from productivity_tracker.infra.db.document_sqlite import SqliteDocumentStore, _select
from productivity_tracker.infra.db.query import apply_update, matches, run_pipeline
from productivity_tracker.infra.db.schema_version import MIGRATIONS_DIR, apply_migrations
from productivity_tracker.infra.ids.uuid_gen import UuidGenerator

from tests.conftest import T0


async def _store(tmp_path, clock) -> SqliteDocumentStore:
    store = SqliteDocumentStore(Database(str(tmp_path / "docs.db")), clock, UuidGenerator())
    await store.init()
    return store


# ----- pure query engine -----


def test_matches_array_membership_and_ne():
    doc = {"task_ids": ["a", "b"], "user_id": 1}
    assert matches(doc, {"task_ids": "a"}) is True
    assert matches(doc, {"task_ids": {"$ne": "a"}}) is False
    assert matches(doc, {"task_ids": {"$ne": "c"}}) is True


def test_matches_missing_field_equals_none():
    assert matches({"a": 1}, {"b": None}) is True
    assert matches({"a": 1}, {"b": {"$ne": None}}) is False
    assert matches({"a": 1}, {"b": {"$exists": False}}) is True


def test_matches_range_and_or():
    doc = {"n": 5}
    assert matches(doc, {"n": {"$gte": 5, "$lt": 6}}) is True
    assert matches(doc, {"$or": [{"n": 1}, {"n": {"$in": [4, 5]}}]}) is True
    assert matches(doc, {"n": {"$nin": [5]}}) is False


def test_unknown_operator_raises():
    with pytest.raises(ValueError):
        matches({"n": 1}, {"n": {"$regex": "x"}})


def test_apply_update_operators():
    doc = {"_id": "x", "ids": ["a"], "total": 1}
    out = apply_update(doc, {"$push": {"ids": "b"}, "$inc": {"total": 1}, "$set": {"name": "n"}})
    assert out == {"_id": "x", "ids": ["a", "b"], "total": 2, "name": "n"}
    out = apply_update(out, {"$pull": {"ids": "a"}, "$unset": {"name": ""}})
    assert out == {"_id": "x", "ids": ["b"], "total": 2}
    # input untouched
    assert doc == {"_id": "x", "ids": ["a"], "total": 1}


def test_pipeline_divide_by_zero_is_zero():
    rows = run_pipeline(
        [{"done": 0, "total": 0}, {"done": 1, "total": 2}],
        [{"$project": {"rate": {"$divide": ["$done", "$total"]}, "_id": 0}}],
    )
    assert rows == [{"rate": 0}, {"rate": 0.5}]


def test_only_implemented_stages_and_accumulators_run():
    docs = [{"n": 1}, {"n": 2}]
    with pytest.raises(ValueError):
        run_pipeline(docs, [{"$limit": 1}])
    with pytest.raises(ValueError):
        run_pipeline(docs, [{"$group": {"_id": None, "top": {"$max": "$n"}}}])
    with pytest.raises(ValueError):
        matches({"n": 1}, {"$and": [{"n": 1}]})
    assert run_pipeline(docs, [{"$group": {"_id": None, "avg": {"$avg": "$n"}}}]) == [{"_id": None, "avg": 1.5}]


def test_select_pushes_datetime_bounds_into_sql():
    sql, params = _select(
        "tasks",
        {
            "user_id": 1,
            "status": "scheduled",
            "scheduled_start": {"$gte": T0, "$lt": T0 + timedelta(days=1)},
            "n": {"$gt": 3},
        },
    )
    assert "scheduled_start_at >= ?" in sql
    assert "scheduled_start_at < ?" in sql
    assert "date_at" not in sql
    assert params == [
        "tasks",
        1,
        codec.encode_instant(T0),
        codec.encode_instant(T0 + timedelta(days=1)),
    ]

    sql, params = _select("daily_activities", {"user_id": 1, "date": T0})
    assert "date_at = ?" in sql
    assert params[-1] == "2024-03-04T09:00:00+00:00"


# ----- sqlite adapter -----


def test_insert_find_roundtrips_aware_datetimes(tmp_path, clock):
    async def run():
        store = await _store(tmp_path, clock)
        await store.insert("tasks", {"_id": "t1", "user_id": 1, "when": T0})
        doc = await store.find_one("tasks", {"_id": "t1", "user_id": 1})
        assert doc["when"] == T0
        assert doc["when"].tzinfo is not None
        assert doc["when"].utcoffset() == timedelta(0)

    asyncio.run(run())


def test_find_is_owner_scoped_sorted_and_limited(tmp_path, clock):
    async def run():
        store = await _store(tmp_path, clock)
        await store.insert_many(
            "tasks",
            [
                {"user_id": 1, "n": 3, "when": T0 + timedelta(hours=3)},
                {"user_id": 1, "n": 1, "when": T0 + timedelta(hours=1)},
                {"user_id": 2, "n": 2, "when": T0 + timedelta(hours=2)},
                {"user_id": 1, "n": 2, "when": T0 + timedelta(hours=2)},
            ],
        )
        docs = await store.find("tasks", {"user_id": 1}, sort=[("n", -1)], limit=2)
        assert [d["n"] for d in docs] == [3, 2]
        docs = await store.find("tasks", {"user_id": 1, "when": {"$lt": T0 + timedelta(hours=2)}})
        assert [d["n"] for d in docs] == [1]
        assert await store.count_documents("tasks", {"user_id": 2}) == 1
        # ids generated for documents without one
        assert all(d["_id"] for d in await store.find("tasks", {}))

    asyncio.run(run())


def test_update_one_guarded_push_is_idempotent(tmp_path, clock):
    async def run():
        store = await _store(tmp_path, clock)
        await store.insert("rollups", {"_id": "1:2024-03-04", "user_id": 1, "task_ids": [], "total": 0})
        update = {"$push": {"task_ids": "t1"}, "$inc": {"total": 1}}
        flt = {"_id": "1:2024-03-04", "user_id": 1, "task_ids": {"$ne": "t1"}}
        first = await store.update_one("rollups", flt, update)
        second = await store.update_one("rollups", flt, update)
        assert first["task_ids"] == ["t1"] and first["total"] == 1
        assert second is None
        doc = await store.find_one("rollups", {"_id": "1:2024-03-04"})
        assert doc["total"] == 1

    asyncio.run(run())


def test_upsert_seeds_from_filter_and_set_on_insert(tmp_path, clock):
    async def run():
        store = await _store(tmp_path, clock)
        flt = {"_id": "s1", "user_id": 7}
        created = await store.update_one(
            "summaries", flt, {"$set": {"v": 1}, "$setOnInsert": {"created_at": T0}}, upsert=True
        )
        assert created == {"_id": "s1", "user_id": 7, "v": 1, "created_at": T0}
        updated = await store.update_one(
            "summaries", flt, {"$set": {"v": 2}, "$setOnInsert": {"created_at": T0 + timedelta(days=1)}}, upsert=True
        )
        assert updated["v"] == 2
        assert updated["created_at"] == T0
        assert await store.count_documents("summaries", {}) == 1

    asyncio.run(run())


def test_concurrent_increments_are_not_lost(tmp_path, clock):
    async def run():
        store = await _store(tmp_path, clock)
        await store.insert("counters", {"_id": "c", "user_id": 1, "n": 0})
        await asyncio.gather(*[store.update_one("counters", {"_id": "c"}, {"$inc": {"n": 1}}) for _ in range(10)])
        doc = await store.find_one("counters", {"_id": "c"})
        assert doc["n"] == 10

    asyncio.run(run())


def test_delete_one_and_many(tmp_path, clock):
    async def run():
        store = await _store(tmp_path, clock)
        await store.insert_many("tasks", [{"user_id": 1, "k": i % 2} for i in range(5)])
        assert await store.delete_one("tasks", {"user_id": 1, "k": 0}) == 1
        assert await store.delete_many("tasks", {"user_id": 1, "k": 0}) == 2
        assert await store.delete_many("tasks", {"user_id": 1, "k": 0}) == 0
        assert await store.count_documents("tasks", {"user_id": 1}) == 2

    asyncio.run(run())


def test_aggregate_group_with_cond(tmp_path, clock):
    async def run():
        store = await _store(tmp_path, clock)
        await store.insert_many(
            "tasks",
            [
                {"user_id": 1, "category": "Work", "status": "completed", "minutes": 30},
                {"user_id": 1, "category": "Work", "status": "scheduled", "minutes": 10},
                {"user_id": 1, "category": None, "status": "completed", "minutes": 5},
                {"user_id": 2, "category": "Work", "status": "completed", "minutes": 99},
            ],
        )
        rows = await store.aggregate(
            "tasks",
            [
                {"$match": {"user_id": 1}},
                {
                    "$group": {
                        "_id": "$category",
                        "total": {"$sum": 1},
                        "done": {"$sum": {"$cond": [{"$eq": ["$status", "completed"]}, 1, 0]}},
                        "minutes": {"$sum": "$minutes"},
                    }
                },
                {"$sort": {"_id": 1}},
            ],
        )
        assert rows == [
            {"_id": None, "total": 1, "done": 1, "minutes": 5},
            {"_id": "Work", "total": 2, "done": 1, "minutes": 40},
        ]

    asyncio.run(run())


def test_sqlite_failure_is_wrapped(tmp_path, clock, monkeypatch):
    async def run():
        store = await _store(tmp_path, clock)

        async def broken(*args, **kwargs):
            raise aiosqlite.OperationalError("disk I/O error")

        monkeypatch.setattr(store._db, "fetchall", broken)
        with pytest.raises(PersistenceError):
            await store.find("tasks", {"user_id": 1})

    asyncio.run(run())


def test_range_query_reads_only_rows_in_range(tmp_path, clock, monkeypatch):
    async def run():
        store = await _store(tmp_path, clock)
        helsinki = timezone(timedelta(hours=2))
        await store.insert_many(
            "tasks",
            [
                {"_id": "before", "user_id": 1, "scheduled_start": T0 - timedelta(seconds=1)},
                {"_id": "at", "user_id": 1, "scheduled_start": T0},
                {"_id": "fraction", "user_id": 1, "scheduled_start": T0 + timedelta(microseconds=500)},
                {"_id": "local", "user_id": 1, "scheduled_start": datetime(2024, 3, 4, 13, 0, tzinfo=helsinki)},
                {"_id": "after", "user_id": 1, "scheduled_start": T0 + timedelta(hours=5)},
                {"_id": "undated", "user_id": 1},
            ],
        )

        rows_read = []
        fetchall = store._db.fetchall

        async def counting(sql, params=()):
            rows = await fetchall(sql, params)
            rows_read.append(len(rows))
            return rows

        monkeypatch.setattr(store._db, "fetchall", counting)
        docs = await store.find(
            "tasks",
            {"user_id": 1, "scheduled_start": {"$gte": T0, "$lt": T0 + timedelta(hours=5)}},
            sort=[("scheduled_start", 1)],
        )
        assert [d["_id"] for d in docs] == ["at", "fraction", "local"]
        assert rows_read == [3]

        # the mirrored column follows updates
        await store.update_one("tasks", {"_id": "after"}, {"$set": {"scheduled_start": T0 + timedelta(hours=1)}})
        docs = await store.find("tasks", {"user_id": 1, "scheduled_start": {"$lte": T0 + timedelta(hours=1)}})
        assert {d["_id"] for d in docs} == {"before", "at", "fraction", "after"}

    asyncio.run(run())


def test_range_columns_are_backfilled_for_existing_rows(tmp_path, clock):
    async def run():
        first_only = tmp_path / "migrations"
        first_only.mkdir()
        shutil.copy(MIGRATIONS_DIR / "001_documents.sql", first_only)
        db = Database(str(tmp_path / "old.db"))
        await apply_migrations(db, "2024-01-01T00:00:00+00:00", first_only)
        await db.execute(
            """
            INSERT INTO documents(collection, doc_id, user_id, body, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?);
            """,
            ("daily_activities", "1:2024-03-04", 1, codec.dumps({"_id": "1:2024-03-04", "user_id": 1, "date": T0}), "x", "x"),
        )

        store = SqliteDocumentStore(db, clock, UuidGenerator())
        await store.init()
        found = await store.find("daily_activities", {"user_id": 1, "date": {"$gte": T0, "$lt": T0 + timedelta(days=1)}})
        assert [d["_id"] for d in found] == ["1:2024-03-04"]

    asyncio.run(run())
