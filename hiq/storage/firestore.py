from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from firebase_admin import firestore
from google.api_core import exceptions as gcp_exceptions
from google.cloud.firestore_v1.base_query import FieldFilter

from hiq.logging import get_logger
from hiq.storage.documents import SUPPORTED_OPERATORS, Document, Filter, Mutation
from hiq.storage.errors import DocumentNotFound, StoreError

logger = get_logger(__name__)

# Writes per commit allowed by Firestore
MAX_BATCH_WRITES = 500


def _chunks(items: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


class FirestoreStore:
    """Document store backed by Cloud Firestore through firebase_admin.

    The client is created by the process entry point and injected here.
    Google API errors are wrapped in StoreError so callers never see
    transport exceptions.
    """

    def __init__(self, client: firestore.Client) -> None:
        self.client = client

    def _ref(self, collection: str, doc_id: str):
        return self.client.collection(collection).document(doc_id)

    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        try:
            snapshot = self._ref(collection, doc_id).get()
        except gcp_exceptions.GoogleAPICallError as exc:
            raise StoreError("document read failed", detail={"collection": collection}) from exc
        return snapshot.to_dict() if snapshot.exists else None

    def set(
        self, collection: str, doc_id: str, data: Mapping[str, Any], *, merge: bool = False
    ) -> None:
        try:
            self._ref(collection, doc_id).set(dict(data), merge=merge)
        except gcp_exceptions.GoogleAPICallError as exc:
            raise StoreError("document write failed", detail={"collection": collection}) from exc

    def add(self, collection: str, data: Mapping[str, Any]) -> str:
        try:
            _, ref = self.client.collection(collection).add(dict(data))
        except gcp_exceptions.GoogleAPICallError as exc:
            raise StoreError("document write failed", detail={"collection": collection}) from exc
        return ref.id

    def update(self, collection: str, doc_id: str, fields: Mapping[str, Any]) -> None:
        try:
            self._ref(collection, doc_id).update(dict(fields))
        except gcp_exceptions.NotFound as exc:
            raise DocumentNotFound(
                "document not found", detail={"collection": collection, "id": doc_id}
            ) from exc
        except gcp_exceptions.GoogleAPICallError as exc:
            raise StoreError("document update failed", detail={"collection": collection}) from exc

    def delete(self, collection: str, doc_id: str) -> bool:
        return self.pop(collection, doc_id) is not None

    def pop(self, collection: str, doc_id: str) -> Optional[Document]:
        ref = self._ref(collection, doc_id)

        @firestore.transactional
        def _pop(transaction) -> Optional[Document]:
            snapshot = ref.get(transaction=transaction)
            if not snapshot.exists:
                return None
            transaction.delete(ref)
            return snapshot.to_dict()

        try:
            return _pop(self.client.transaction())
        except gcp_exceptions.GoogleAPICallError as exc:
            raise StoreError("document delete failed", detail={"collection": collection}) from exc

    def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        *,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Tuple[str, Document]]:
        query = self.client.collection(collection)
        for field, op, value in filters:
            if op not in SUPPORTED_OPERATORS:
                raise StoreError(f"unsupported query operator: {op}")
            query = query.where(filter=FieldFilter(field, op, value))
        if order_by:
            direction = firestore.Query.DESCENDING if descending else firestore.Query.ASCENDING
            query = query.order_by(order_by, direction=direction)
        if limit is not None:
            query = query.limit(limit)
        try:
            return [(doc.id, doc.to_dict()) for doc in query.stream()]
        except gcp_exceptions.GoogleAPICallError as exc:
            raise StoreError("query failed", detail={"collection": collection}) from exc

    def transact(self, collection: str, doc_id: str, mutate: Mutation) -> Optional[Document]:
        ref = self._ref(collection, doc_id)

        @firestore.transactional
        def _run(transaction) -> Optional[Document]:
            snapshot = ref.get(transaction=transaction)
            current = snapshot.to_dict() if snapshot.exists else None
            updates = mutate(dict(current) if current is not None else None)
            if updates is None:
                return current
            if current is None:
                transaction.set(ref, dict(updates))
            else:
                transaction.update(ref, dict(updates))
            return {**(current or {}), **updates}

        try:
            return _run(self.client.transaction())
        except gcp_exceptions.GoogleAPICallError as exc:
            raise StoreError("transaction failed", detail={"collection": collection}) from exc

    def batch_update(
        self,
        collection: str,
        updates: Mapping[str, Mapping[str, Any]],
        *,
        expect: Optional[Mapping[str, Any]] = None,
    ) -> List[str]:
        doc_ids = list(updates.keys())
        applied: List[str] = []
        for chunk in _chunks(doc_ids, MAX_BATCH_WRITES):
            refs = [self._ref(collection, doc_id) for doc_id in chunk]

            # Reads and conditional writes share one transaction per chunk
            @firestore.transactional
            def _apply(transaction, refs=refs) -> List[str]:
                written: List[str] = []
                snapshots: Dict[str, Any] = {
                    snap.id: snap for snap in self.client.get_all(refs, transaction=transaction)
                }
                for ref in refs:
                    snapshot = snapshots.get(ref.id)
                    if snapshot is None or not snapshot.exists:
                        continue
                    current = snapshot.to_dict() or {}
                    if expect and any(current.get(k) != v for k, v in expect.items()):
                        continue
                    transaction.update(ref, dict(updates[ref.id]))
                    written.append(ref.id)
                return written

            try:
                applied.extend(_apply(self.client.transaction()))
            except gcp_exceptions.GoogleAPICallError as exc:
                logger.error(
                    "firestore_batch_update_failed",
                    collection=collection,
                    batch_size=len(chunk),
                    error=str(exc),
                )
                raise StoreError("batch update failed", detail={"collection": collection}) from exc
        return applied

    def batch_delete(self, collection: str, doc_ids: Iterable[str]) -> int:
        ids = list(doc_ids)
        for chunk in _chunks(ids, MAX_BATCH_WRITES):
            batch = self.client.batch()
            for doc_id in chunk:
                batch.delete(self._ref(collection, doc_id))
            try:
                batch.commit()
            except gcp_exceptions.GoogleAPICallError as exc:
                raise StoreError("batch delete failed", detail={"collection": collection}) from exc
        return len(ids)

    def array_union(
        self,
        collection: str,
        doc_id: str,
        field: str,
        values: Sequence[Any],
        *,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> None:
        data: Dict[str, Any] = {field: firestore.ArrayUnion(list(values))}
        if extra:
            data.update(extra)
        self.set(collection, doc_id, data, merge=True)


__all__ = ["FirestoreStore"]
