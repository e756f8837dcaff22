"""In-process document store.

One collection per aggregate. A document is replaced as a whole under
the collection lock, which is the per-document atomic update the engine
relies on. Cross-document consistency is the job of the aggregate locks
in ``civicrepair.locking``, not of the store.
"""

from __future__ import annotations

import threading
from typing import Callable, Generic, Iterator, Optional, TypeVar

from civicrepair.errors import ConflictError, NotFoundError
from civicrepair.models.assignment import Assignment
from civicrepair.models.ballot import Ballot
from civicrepair.models.escrow import EscrowRecord
from civicrepair.models.grievance import Grievance
from civicrepair.models.market import Bid

T = TypeVar("T")


class Collection(Generic[T]):
    """Documents of one kind, keyed by id, in insertion order."""

    def __init__(self, label: str, key: Callable[[T], str]) -> None:
        self._label = label
        self._key = key
        self._docs: dict[str, T] = {}
        self._lock = threading.Lock()

    def insert(self, doc: T) -> T:
        doc_id = self._key(doc)
        with self._lock:
            if doc_id in self._docs:
                raise ConflictError(f"{self._label} already exists: {doc_id}")
            self._docs[doc_id] = doc
        return doc

    def put(self, doc: T) -> T:
        with self._lock:
            self._docs[self._key(doc)] = doc
        return doc

    def get(self, doc_id: str) -> T:
        with self._lock:
            doc = self._docs.get(doc_id)
        if doc is None:
            raise NotFoundError(f"{self._label} not found: {doc_id}")
        return doc

    def find(self, doc_id: str) -> Optional[T]:
        with self._lock:
            return self._docs.get(doc_id)

    def delete(self, doc_id: str) -> T:
        with self._lock:
            doc = self._docs.pop(doc_id, None)
        if doc is None:
            raise NotFoundError(f"{self._label} not found: {doc_id}")
        return doc

    def where(self, predicate: Callable[[T], bool]) -> list[T]:
        with self._lock:
            docs = list(self._docs.values())
        return [d for d in docs if predicate(d)]

    def __iter__(self) -> Iterator[T]:
        with self._lock:
            docs = list(self._docs.values())
        return iter(docs)

    def __len__(self) -> int:
        return len(self._docs)


class DocumentStore:
    """All aggregates of one engine instance."""

    def __init__(self) -> None:
        self.grievances: Collection[Grievance] = Collection(
            "Grievance", lambda g: g.grievance_id)
        self.bids: Collection[Bid] = Collection("Bid", lambda b: b.bid_id)
        self.ballots: Collection[Ballot] = Collection("Ballot", lambda b: b.ballot_id)
        self.assignments: Collection[Assignment] = Collection(
            "Assignment", lambda a: a.assignment_id)
        self.escrows: Collection[EscrowRecord] = Collection(
            "Escrow", lambda e: e.escrow_id)

    def bids_for(self, grievance_id: str) -> list[Bid]:
        return self.bids.where(lambda b: b.grievance_id == grievance_id)

    def active_assignment_for(self, grievance_id: str) -> Optional[Assignment]:
        active = self.assignments.where(
            lambda a: a.grievance_id == grievance_id and a.is_active()
        )
        return active[0] if active else None
