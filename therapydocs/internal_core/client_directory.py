from __future__ import annotations

from threading import RLock
from typing import Dict, Iterable, List, Optional, Protocol

from .contracts import (
    Client,
    ClientContext,
    Document,
    LastSessionContext,
    TreatmentPlanContext,
)
from .document_store import DocumentStore


class ClientNotFoundError(KeyError):
    pass


class ClientDirectory(Protocol):
    def get(self, client_id: str) -> Client: ...

    def search(self, text: str = "") -> List[Client]: ...

    def load_context(self, client_id: str) -> ClientContext: ...


def _latest(documents: Iterable[Document], document_type: str) -> Optional[Document]:
    matches = [item for item in documents if item.document_type == document_type]
    if not matches:
        return None
    return max(matches, key=lambda item: (item.date, item.created_at))


def build_client_context(documents: List[Document]) -> ClientContext:
    """Derive diagnosis, treatment plan and last session from a client's documents."""
    diagnosis_doc = _latest(documents, "diagnosis")
    plan_doc = _latest(documents, "treatment_plan")
    session_doc = _latest(documents, "progress_note")

    treatment_plan: Optional[TreatmentPlanContext] = None
    if plan_doc is not None:
        content = plan_doc.content
        treatment_plan = TreatmentPlanContext(
            goals=[str(item) for item in list(content.get("goals", []) or [])],
            target_symptoms=[str(item) for item in list(content.get("target_symptoms", []) or [])],
            notes=str(content.get("notes", "") or ""),
        )

    last_session: Optional[LastSessionContext] = None
    if session_doc is not None:
        last_session = LastSessionContext(
            date=session_doc.date,
            narrative=str(session_doc.content.get("narrative_format", "") or ""),
        )

    return ClientContext(
        documents=documents,
        diagnosis=(str(diagnosis_doc.content.get("text", "") or "") or None) if diagnosis_doc else None,
        treatment_plan=treatment_plan,
        last_session=last_session,
    )


class InMemoryClientDirectory:
    def __init__(self, documents: DocumentStore, clients: Iterable[Client] = ()):
        self._documents = documents
        self._lock = RLock()
        self._clients: Dict[str, Client] = {item.id: item for item in clients}

    def add(self, client: Client) -> None:
        with self._lock:
            self._clients[client.id] = client

    def get(self, client_id: str) -> Client:
        with self._lock:
            client = self._clients.get(client_id)
        if client is None:
            raise ClientNotFoundError(f"Unknown client_id: {client_id}")
        return client

    def search(self, text: str = "") -> List[Client]:
        needle = str(text or "").strip().lower()
        with self._lock:
            clients = list(self._clients.values())
        if needle:
            clients = [item for item in clients if needle in item.name.lower()]
        return sorted(clients, key=lambda item: item.name.lower())

    def load_context(self, client_id: str) -> ClientContext:
        self.get(client_id)
        return build_client_context(self._documents.list(client_id))
