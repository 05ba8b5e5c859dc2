from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

Document = Dict[str, Any]
Filter = Dict[str, Any]
Update = Dict[str, Any]
SortSpec = Sequence[Tuple[str, int]]


class Clock(ABC):
    @abstractmethod
    def now(self) -> datetime: ...


class IdGenerator(ABC):
    @abstractmethod
    def new_id(self) -> str: ...


class DocumentStore(ABC):
    """
    Generic document-query collaborator.

    Documents are plain dicts keyed by "_id". Filters and updates use the
    Mongo-style operator vocabulary ($gte, $in, $set, $inc, $push, $pull, ...).
    Implementations raise PersistenceError on storage failure.
    """

    @abstractmethod
    async def find_one(self, collection: str, filter: Filter) -> Optional[Document]: ...

    @abstractmethod
    async def find(
        self,
        collection: str,
        filter: Filter,
        sort: Optional[SortSpec] = None,
        limit: Optional[int] = None,
        skip: int = 0,
    ) -> List[Document]: ...

    @abstractmethod
    async def insert(self, collection: str, doc: Document) -> Document: ...

    @abstractmethod
    async def insert_many(self, collection: str, docs: Sequence[Document]) -> List[Document]: ...

    @abstractmethod
    async def update_one(
        self,
        collection: str,
        filter: Filter,
        update: Update,
        upsert: bool = False,
    ) -> Optional[Document]:
        """Apply update to the first match and return the document after the update (None if nothing matched)."""

    @abstractmethod
    async def delete_one(self, collection: str, filter: Filter) -> int: ...

    @abstractmethod
    async def delete_many(self, collection: str, filter: Filter) -> int: ...

    @abstractmethod
    async def aggregate(self, collection: str, pipeline: Sequence[Dict[str, Any]]) -> List[Document]: ...

    @abstractmethod
    async def count_documents(self, collection: str, filter: Filter) -> int: ...
