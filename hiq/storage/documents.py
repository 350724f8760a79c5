from __future__ import annotations

from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple

Document = Dict[str, Any]
# (field, operator, value); operators: ==, !=, <, <=, >, >=, in, array_contains
Filter = Tuple[str, str, Any]
Mutation = Callable[[Optional[Document]], Optional[Document]]

SUPPORTED_OPERATORS = frozenset({"==", "!=", "<", "<=", ">", ">=", "in", "array_contains"})

# Collection names shared by the services
USERS = "users"
ACCESS_CONTROL = "access_control"
ADMIN_ALLOW_LIST_DOC = "admins"
REGISTRATION_TOKENS = "registration_tokens"
SESSION_TOKENS = "session_tokens"
SESSIONS = "sessions"
ACCESS_REQUESTS = "access_requests"
INTERVIEWS = "interviews"
INTERVIEW_ACCESS_LOGS = "interview_access_logs"


class DocumentStore(Protocol):
    """Document database operations the services rely on.

    ``transact`` runs ``mutate`` against the current document (``None`` when
    absent) inside a read-modify-write transaction. ``mutate`` returns the
    fields to write, or ``None`` to leave the document untouched; raising
    inside ``mutate`` aborts the transaction without writing. The merged
    document is returned.

    ``batch_update`` applies all updates in one commit. When ``expect`` is
    given, only documents whose current fields equal ``expect`` are written,
    and the ids actually written are returned.
    """

    def get(self, collection: str, doc_id: str) -> Optional[Document]: ...

    def set(
        self, collection: str, doc_id: str, data: Mapping[str, Any], *, merge: bool = False
    ) -> None: ...

    def add(self, collection: str, data: Mapping[str, Any]) -> str: ...

    def update(self, collection: str, doc_id: str, fields: Mapping[str, Any]) -> None: ...

    def delete(self, collection: str, doc_id: str) -> bool: ...

    def pop(self, collection: str, doc_id: str) -> Optional[Document]: ...

    def query(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        *,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> List[Tuple[str, Document]]: ...

    def transact(self, collection: str, doc_id: str, mutate: Mutation) -> Optional[Document]: ...

    def batch_update(
        self,
        collection: str,
        updates: Mapping[str, Mapping[str, Any]],
        *,
        expect: Optional[Mapping[str, Any]] = None,
    ) -> List[str]: ...

    def batch_delete(self, collection: str, doc_ids: Iterable[str]) -> int: ...

    def array_union(
        self,
        collection: str,
        doc_id: str,
        field: str,
        values: Sequence[Any],
        *,
        extra: Optional[Mapping[str, Any]] = None,
    ) -> None: ...
