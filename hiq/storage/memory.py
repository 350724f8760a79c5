from __future__ import annotations

import copy
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from hiq.storage.documents import SUPPORTED_OPERATORS, Document, Filter, Mutation
from hiq.storage.errors import DocumentNotFound, StoreError


def _comparable(value: Any) -> Any:
    # Naive datetimes are stored as UTC
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _matches(doc: Document, flt: Filter) -> bool:
    field, op, expected = flt
    if field not in doc:
        return False
    actual = _comparable(doc[field])
    expected = _comparable(expected)
    if op == "==":
        return actual == expected
    if op == "!=":
        return actual != expected
    if op == "in":
        return actual in expected
    if op == "array_contains":
        return isinstance(actual, list) and expected in actual
    if actual is None or expected is None:
        return False
    try:
        if op == "<":
            return actual < expected
        if op == "<=":
            return actual <= expected
        if op == ">":
            return actual > expected
        if op == ">=":
            return actual >= expected
    except TypeError:
        return False
    raise StoreError(f"unsupported query operator: {op}")


class MemoryStore:
    """In-process document store used for tests and local development.

    Collections are dicts of deep-copied documents guarded by one re-entrant
    lock, so every operation (transactions and batches included) is atomic.
    """

    def __init__(self) -> None:
        self._collections: Dict[str, Dict[str, Document]] = {}
        self._lock = threading.RLock()

    def _collection(self, name: str) -> Dict[str, Document]:
        return self._collections.setdefault(name, {})

    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        with self._lock:
            doc = self._collection(collection).get(doc_id)
            return copy.deepcopy(doc) if doc is not None else None

    def set(
        self, collection: str, doc_id: str, data: Mapping[str, Any], *, merge: bool = False
    ) -> None:
        with self._lock:
            docs = self._collection(collection)
            if merge and doc_id in docs:
                docs[doc_id].update(copy.deepcopy(dict(data)))
            else:
                docs[doc_id] = copy.deepcopy(dict(data))

    def add(self, collection: str, data: Mapping[str, Any]) -> str:
        doc_id = uuid.uuid4().hex
        self.set(collection, doc_id, data)
        return doc_id

    def update(self, collection: str, doc_id: str, fields: Mapping[str, Any]) -> None:
        with self._lock:
            docs = self._collection(collection)
            if doc_id not in docs:
                raise DocumentNotFound(
                    "document not found", detail={"collection": collection, "id": doc_id}
                )
            docs[doc_id].update(copy.deepcopy(dict(fields)))

    def delete(self, collection: str, doc_id: str) -> bool:
        with self._lock:
            return self._collection(collection).pop(doc_id, None) is not None

    def pop(self, collection: str, doc_id: str) -> Optional[Document]:
        with self._lock:
            return self._collection(collection).pop(doc_id, None)

    def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        *,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Tuple[str, Document]]:
        for flt in filters:
            if flt[1] not in SUPPORTED_OPERATORS:
                raise StoreError(f"unsupported query operator: {flt[1]}")
        with self._lock:
            rows = [
                (doc_id, copy.deepcopy(doc))
                for doc_id, doc in self._collection(collection).items()
                if all(_matches(doc, flt) for flt in filters)
            ]
        if order_by:
            # Firestore omits documents missing the ordering field
            rows = [row for row in rows if row[1].get(order_by) is not None]
            rows.sort(key=lambda row: _comparable(row[1][order_by]), reverse=descending)
        if limit is not None:
            rows = rows[:limit]
        return rows

    def transact(self, collection: str, doc_id: str, mutate: Mutation) -> Optional[Document]:
        with self._lock:
            docs = self._collection(collection)
            current = docs.get(doc_id)
            updates = mutate(copy.deepcopy(current) if current is not None else None)
            if updates is None:
                return copy.deepcopy(current) if current is not None else None
            merged = {**(current or {}), **copy.deepcopy(dict(updates))}
            docs[doc_id] = merged
            return copy.deepcopy(merged)

    def batch_update(
        self,
        collection: str,
        updates: Mapping[str, Mapping[str, Any]],
        *,
        expect: Optional[Mapping[str, Any]] = None,
    ) -> List[str]:
        applied: List[str] = []
        with self._lock:
            docs = self._collection(collection)
            for doc_id, fields in updates.items():
                current = docs.get(doc_id)
                if current is None:
                    continue
                if expect and any(current.get(key) != value for key, value in expect.items()):
                    continue
                current.update(copy.deepcopy(dict(fields)))
                applied.append(doc_id)
        return applied

    def batch_delete(self, collection: str, doc_ids: Iterable[str]) -> int:
        removed = 0
        with self._lock:
            docs = self._collection(collection)
            for doc_id in doc_ids:
                if docs.pop(doc_id, None) is not None:
                    removed += 1
        return removed

    def array_union(
        self,
        collection: str,
        doc_id: str,
        field: str,
        values: Sequence[Any],
        *,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> None:
        with self._lock:
            doc = self._collection(collection).setdefault(doc_id, {})
            existing = list(doc.get(field) or [])
            for value in values:
                if value not in existing:
                    existing.append(value)
            doc[field] = existing
            if extra:
                doc.update(copy.deepcopy(dict(extra)))


__all__ = ["MemoryStore"]
