from __future__ import annotations

import copy
import uuid
from threading import RLock
from typing import Any, Dict, List, Optional, Protocol

from therapydocs.utils.dates import utc_now_iso

from .contracts import Document, DocumentStatus


class DocumentNotFoundError(KeyError):
    pass


class DocumentStore(Protocol):
    def list(self, client_id: str) -> List[Document]: ...

    def get(self, client_id: str, document_id: str) -> Document: ...

    def create(
        self,
        client_id: str,
        document_type: str,
        content: Dict[str, Any],
        status: DocumentStatus,
        *,
        date: str,
        amendment_of: Optional[str] = None,
        amendment_reason: Optional[str] = None,
        amendment_date: Optional[str] = None,
    ) -> Document: ...

    def update(
        self,
        client_id: str,
        document_id: str,
        *,
        content: Optional[Dict[str, Any]] = None,
        status: Optional[DocumentStatus] = None,
    ) -> Document: ...


class InMemoryDocumentStore:
    def __init__(self) -> None:
        self._lock = RLock()
        self._documents: Dict[str, Dict[str, Document]] = {}

    def list(self, client_id: str) -> List[Document]:
        with self._lock:
            docs = [item.model_copy(deep=True) for item in self._documents.get(client_id, {}).values()]
        docs.sort(key=lambda item: (item.date, item.created_at), reverse=True)
        return docs

    def get(self, client_id: str, document_id: str) -> Document:
        with self._lock:
            doc = self._documents.get(client_id, {}).get(document_id)
            if doc is None:
                raise DocumentNotFoundError(f"Unknown document_id for client {client_id}: {document_id}")
            return doc.model_copy(deep=True)

    def create(
        self,
        client_id: str,
        document_type: str,
        content: Dict[str, Any],
        status: DocumentStatus,
        *,
        date: str,
        amendment_of: Optional[str] = None,
        amendment_reason: Optional[str] = None,
        amendment_date: Optional[str] = None,
    ) -> Document:
        now = utc_now_iso()
        doc = Document(
            id=f"doc_{uuid.uuid4().hex[:12]}",
            client_id=client_id,
            document_type=document_type,
            date=date,
            content=copy.deepcopy(dict(content)),
            status=status,
            created_at=now,
            updated_at=now,
            amendment_of=amendment_of,
            amendment_reason=amendment_reason,
            amendment_date=amendment_date,
        )
        with self._lock:
            self._documents.setdefault(client_id, {})[doc.id] = doc
        return doc.model_copy(deep=True)

    def update(
        self,
        client_id: str,
        document_id: str,
        *,
        content: Optional[Dict[str, Any]] = None,
        status: Optional[DocumentStatus] = None,
    ) -> Document:
        with self._lock:
            existing = self._documents.get(client_id, {}).get(document_id)
            if existing is None:
                raise DocumentNotFoundError(f"Unknown document_id for client {client_id}: {document_id}")
            changes: Dict[str, Any] = {"updated_at": utc_now_iso()}
            if content is not None:
                changes["content"] = copy.deepcopy(dict(content))
            if status is not None:
                changes["status"] = status
            updated = existing.model_copy(update=changes)
            self._documents[client_id][document_id] = updated
            return updated.model_copy(deep=True)
