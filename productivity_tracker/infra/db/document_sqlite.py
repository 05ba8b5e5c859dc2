from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import aiosqlite

from productivity_tracker.domain.common.errors import PersistenceError
from productivity_tracker.domain.common.ports import (
    Clock,
    Document,
    DocumentStore,
    Filter,
    IdGenerator,
    SortSpec,
    Update,
)
from productivity_tracker.domain.common.time import to_iso
from productivity_tracker.infra.db import codec
from productivity_tracker.infra.db.connection import Database
from productivity_tracker.infra.db.query import (
    apply_update,
    equality_value,
    matches,
    run_pipeline,
    seed_from_filter,
    sort_documents,
)
from productivity_tracker.infra.db.schema_version import apply_migrations

logger = logging.getLogger(__name__)


@contextmanager
def _store_errors(op: str, collection: str) -> Iterator[None]:
    try:
        yield
    except aiosqlite.Error as e:
        logger.error("Document store %s on %s failed: %s", op, collection, e)
        raise PersistenceError(f"Document store {op} failed") from e


# document field -> indexed column holding its UTC instant (migration 002)
RANGE_COLUMNS = {
    "scheduled_start": "scheduled_start_at",
    "date": "date_at",
}

_SQL_COMPARISONS = {"$eq": "=", "$gt": ">", "$gte": ">=", "$lt": "<", "$lte": "<="}


def _range_values(doc: Document) -> List[Optional[str]]:
    values: List[Optional[str]] = []
    for field in RANGE_COLUMNS:
        value = doc.get(field)
        values.append(codec.encode_instant(value) if isinstance(value, datetime) else None)
    return values


def _range_clauses(filter: Filter) -> Tuple[str, List[Any]]:
    sql = ""
    params: List[Any] = []
    for field, column in RANGE_COLUMNS.items():
        cond = filter.get(field) if filter else None
        if isinstance(cond, datetime):
            cond = {"$eq": cond}
        if not isinstance(cond, dict):
            continue
        for op, target in cond.items():
            if op in _SQL_COMPARISONS and isinstance(target, datetime):
                sql += f" AND {column} {_SQL_COMPARISONS[op]} ?"
                params.append(codec.encode_instant(target))
    return sql, params


def _select(collection: str, filter: Filter) -> Tuple[str, List[Any]]:
    """
    SQL narrowing by collection, by _id / user_id when the filter pins them,
    and by datetime bounds on the mirrored range columns. The full filter is
    still evaluated in-process on what comes back.
    """
    sql = "SELECT body FROM documents WHERE collection = ?"
    params: List[Any] = [collection]
    doc_id = equality_value(filter, "_id")
    if isinstance(doc_id, str):
        sql += " AND doc_id = ?"
        params.append(doc_id)
    user_id = equality_value(filter, "user_id")
    if isinstance(user_id, int) and not isinstance(user_id, bool):
        sql += " AND user_id = ?"
        params.append(user_id)
    range_sql, range_params = _range_clauses(filter)
    sql += range_sql
    params.extend(range_params)
    # rowid keeps insertion order stable
    sql += " ORDER BY rowid;"
    return sql, params


_INSERT_SQL = """
    INSERT INTO documents(collection, doc_id, user_id, body, scheduled_start_at, date_at, created_at, updated_at)
    VALUES (?, ?, ?, ?, ?, ?, ?, ?);
"""


def _insert_row(collection: str, doc: Document, now: str) -> Tuple[Any, ...]:
    return (collection, doc["_id"], doc.get("user_id"), codec.dumps(doc), *_range_values(doc), now, now)


class SqliteDocumentStore(DocumentStore):
    """
    Document store on a single SQLite table.

    Bodies are JSON. The owner id, scheduled_start and date are mirrored into
    indexed columns so owner-scoped and date-range queries only read the rows
    they can match. Remaining filter predicates run in-process. Writes that
    read first (update_one, deletes) happen inside one BEGIN IMMEDIATE
    transaction, which makes $inc/$push/$pull atomic across connections.
    """

    def __init__(self, db: Database, clock: Clock, ids: IdGenerator) -> None:
        self._db = db
        self._clock = clock
        self._ids = ids

    async def init(self) -> None:
        with _store_errors("migrate", "*"):
            await apply_migrations(self._db, to_iso(self._clock.now()))

    def _now_iso(self) -> str:
        return to_iso(self._clock.now())

    def _prepare(self, doc: Document) -> Document:
        prepared = dict(doc)
        if not prepared.get("_id"):
            prepared["_id"] = self._ids.new_id()
        return prepared

    async def _matching(self, collection: str, filter: Filter, conn: Optional[aiosqlite.Connection] = None) -> List[Document]:
        sql, params = _select(collection, filter)
        if conn is None:
            rows = await self._db.fetchall(sql, params)
        else:
            cur = await conn.execute(sql, params)
            rows = await cur.fetchall()
        docs = [codec.loads(r["body"]) for r in rows]
        return [d for d in docs if matches(d, filter)]

    async def find_one(self, collection: str, filter: Filter) -> Optional[Document]:
        with _store_errors("find_one", collection):
            docs = await self._matching(collection, filter)
        return docs[0] if docs else None

    async def find(
        self,
        collection: str,
        filter: Filter,
        sort: Optional[SortSpec] = None,
        limit: Optional[int] = None,
        skip: int = 0,
    ) -> List[Document]:
        with _store_errors("find", collection):
            docs = await self._matching(collection, filter)
        if sort:
            docs = sort_documents(docs, sort)
        if skip:
            docs = docs[skip:]
        if limit is not None:
            docs = docs[:limit]
        return docs

    async def insert(self, collection: str, doc: Document) -> Document:
        prepared = self._prepare(doc)
        now = self._now_iso()
        with _store_errors("insert", collection):
            await self._db.execute(_INSERT_SQL, _insert_row(collection, prepared, now))
        return prepared

    async def insert_many(self, collection: str, docs: Sequence[Document]) -> List[Document]:
        prepared = [self._prepare(d) for d in docs]
        if not prepared:
            return []
        now = self._now_iso()
        with _store_errors("insert_many", collection):
            await self._db.executemany(_INSERT_SQL, [_insert_row(collection, d, now) for d in prepared])
        return prepared

    async def update_one(
        self,
        collection: str,
        filter: Filter,
        update: Update,
        upsert: bool = False,
    ) -> Optional[Document]:
        now = self._now_iso()
        with _store_errors("update_one", collection):
            async with self._db.transaction() as conn:
                found = await self._matching(collection, filter, conn)
                if found:
                    current = found[0]
                    updated = apply_update(current, update)
                    updated["_id"] = current["_id"]
                    await conn.execute(
                        """
                        UPDATE documents
                        SET body = ?, user_id = ?, scheduled_start_at = ?, date_at = ?, updated_at = ?
                        WHERE collection = ? AND doc_id = ?;
                        """,
                        (
                            codec.dumps(updated),
                            updated.get("user_id"),
                            *_range_values(updated),
                            now,
                            collection,
                            current["_id"],
                        ),
                    )
                    return updated
                if not upsert:
                    return None
                created = self._prepare(apply_update(seed_from_filter(filter), update, inserting=True))
                await conn.execute(_INSERT_SQL, _insert_row(collection, created, now))
                return created

    async def _delete(self, op: str, collection: str, filter: Filter, first_only: bool) -> int:
        with _store_errors(op, collection):
            async with self._db.transaction() as conn:
                found = await self._matching(collection, filter, conn)
                if first_only:
                    found = found[:1]
                if found:
                    await conn.executemany(
                        "DELETE FROM documents WHERE collection = ? AND doc_id = ?;",
                        [(collection, d["_id"]) for d in found],
                    )
                return len(found)

    async def delete_one(self, collection: str, filter: Filter) -> int:
        return await self._delete("delete_one", collection, filter, first_only=True)

    async def delete_many(self, collection: str, filter: Filter) -> int:
        return await self._delete("delete_many", collection, filter, first_only=False)

    async def aggregate(self, collection: str, pipeline: Sequence[Dict[str, Any]]) -> List[Document]:
        stages = list(pipeline)
        first_match: Filter = {}
        if stages and "$match" in stages[0]:
            first_match = stages[0]["$match"]
        with _store_errors("aggregate", collection):
            docs = await self._matching(collection, first_match)
        return run_pipeline(docs, stages)

    async def count_documents(self, collection: str, filter: Filter) -> int:
        with _store_errors("count_documents", collection):
            docs = await self._matching(collection, filter)
        return len(docs)
