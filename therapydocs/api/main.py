from __future__ import annotations

"""
API surface for the Therapy Docs authoring runtime.

Design intent:
- Keep API orchestration thin and typed.
- Delegate domain logic to entry/drafts/duplicates/note/narrative modules.
- Stores, feeds and settings live on app.state so tests can inject them.
"""

import logging
import threading
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Optional
from uuid import uuid4

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from therapydocs.drafts.lifecycle import DraftLifecycleManager, DraftNotFoundError
from therapydocs.entry.flow import EntryFlow, InvalidTransition, TransitionBlocked
from therapydocs.internal_core.audit import AuditTrail
from therapydocs.internal_core.client_directory import ClientNotFoundError, InMemoryClientDirectory
from therapydocs.internal_core.config import AppConfig, configure_logging, load_config, validate_config
from therapydocs.internal_core.contracts import (
    AmendmentChain,
    Client,
    ClientType,
    Document,
    DocumentStatus,
    DuplicateWarnings,
    SessionBasis,
)
from therapydocs.internal_core.document_store import DocumentNotFoundError, InMemoryDocumentStore
from therapydocs.internal_core.draft_store import DraftStore, InMemoryDraftStore, JsonDirectoryDraftStore
from therapydocs.narrative.feeds import GenerationFeed, build_feed
from therapydocs.narrative.generation import (
    GenerationInProgressError,
    GenerationNotFoundError,
    NarrativeGenerator,
    NarrativeJob,
)
from therapydocs.note.editing import EditAmendmentController, EditPolicyError, NothingToSubmitError, group_amendment_chains
from therapydocs.utils.dates import format_saved_at, utc_now_iso


class ClientCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=256)
    client_type: ClientType = "individual"
    session_basis: Optional[SessionBasis] = None
    created_at: str = ""
    risk_level: Optional[str] = None
    total_sessions: Optional[int] = None
    start_date: Optional[str] = None


class ClientListResponse(BaseModel):
    clients: list[Client] = Field(default_factory=list)


class DocumentCreateRequest(BaseModel):
    document_type: str = Field(min_length=1, max_length=64)
    date: str = Field(min_length=10, max_length=32)
    content: dict[str, Any] = Field(default_factory=dict)
    status: DocumentStatus = "complete"


class DocumentsResponse(BaseModel):
    client_id: str
    documents: list[Document] = Field(default_factory=list)
    chains: list[AmendmentChain] = Field(default_factory=list)


class ModalView(BaseModel):
    kind: str
    payload: dict[str, Any] = Field(default_factory=dict)


class WorkspaceResponse(BaseModel):
    workspace_id: str
    view: str
    modal: Optional[ModalView] = None
    client_id: Optional[str] = None
    context_loading: bool = False
    form_type: str = ""
    draft_uuid: Optional[str] = None
    draft_status: str = "idle"
    edit_mode: str = "new"
    note: dict[str, Any] = Field(default_factory=dict)
    has_unsaved_changes: bool = False
    duplicate_warnings: DuplicateWarnings = Field(default_factory=DuplicateWarnings)
    banner_visible: bool = False
    search_text: str = ""
    detail_expanded: bool = False


class ClientSelectRequest(BaseModel):
    client_id: str = Field(min_length=1, max_length=128)


class FormSelectRequest(BaseModel):
    form_type: str = Field(min_length=1, max_length=64)


class ModalResolveRequest(BaseModel):
    action: str = Field(min_length=1, max_length=32)
    draft_uuid: str = Field(default="", max_length=64)
    reason: str = Field(default="", max_length=4000)


class NoteUpdateRequest(BaseModel):
    changes: dict[str, Any] = Field(min_length=1)


class SearchRequest(BaseModel):
    text: str = Field(default="", max_length=256)


class DraftSaveResponse(BaseModel):
    saved: bool
    workspace: WorkspaceResponse


class DraftListItem(BaseModel):
    uuid: str
    form_type: str
    session_date: str
    saved_at: str
    saved_label: str = ""


class DraftListResponse(BaseModel):
    drafts: list[DraftListItem] = Field(default_factory=list)


class SubmitResponse(BaseModel):
    document: Document
    workspace: WorkspaceResponse


class NarrativeJobResponse(BaseModel):
    job_id: str
    status: str
    phase: str = "idle"
    stop_requested: bool = False
    reasoning: str = ""
    narrative: str = ""
    stop_reason: str = ""
    error: str = ""
    committed: bool = False
    created_at: str = ""
    updated_at: str = ""
    debug: dict[str, Any] = Field(default_factory=dict)


@dataclass
class Workspace:
    workspace_id: str
    lifecycle: DraftLifecycleManager
    editor: EditAmendmentController
    flow: EntryFlow
    generator: NarrativeGenerator


logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
    config = _get_config()
    configure_logging(config)
    _get_draft_store().cleanup_old_saved(config.THERAPYDOCS_SAVED_DRAFT_RETENTION_DAYS)
    yield


app = FastAPI(title="therapydocs authoring service", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _project_root() -> Path:
    return Path(__file__).resolve().parents[2]


def _get_config() -> AppConfig:
    existing = getattr(app.state, "config", None)
    if isinstance(existing, AppConfig):
        return existing
    created = validate_config(load_config())
    setattr(app.state, "config", created)
    return created


def _get_draft_store() -> DraftStore:
    existing = getattr(app.state, "draft_store", None)
    if existing is not None:
        return existing
    draft_dir = _get_config().draft_dir_path(_project_root())
    created: DraftStore = JsonDirectoryDraftStore(draft_dir) if draft_dir else InMemoryDraftStore()
    setattr(app.state, "draft_store", created)
    return created


def _get_document_store() -> InMemoryDocumentStore:
    existing = getattr(app.state, "document_store", None)
    if existing is not None:
        return existing
    created = InMemoryDocumentStore()
    setattr(app.state, "document_store", created)
    return created


def _get_client_directory() -> InMemoryClientDirectory:
    existing = getattr(app.state, "client_directory", None)
    if existing is not None:
        return existing
    created = InMemoryClientDirectory(_get_document_store())
    setattr(app.state, "client_directory", created)
    return created


def _get_audit_trail() -> AuditTrail:
    existing = getattr(app.state, "audit_trail", None)
    if isinstance(existing, AuditTrail):
        return existing
    created = AuditTrail()
    setattr(app.state, "audit_trail", created)
    return created


def _get_narrative_feed() -> GenerationFeed:
    existing = getattr(app.state, "narrative_feed", None)
    if existing is not None:
        return existing
    created = build_feed(_get_config())
    setattr(app.state, "narrative_feed", created)
    return created


def _get_narrative_settings() -> Optional[dict[str, Any]]:
    provider = getattr(app.state, "narrative_settings_provider", None)
    if callable(provider):
        return provider()
    return None


def _get_workspace_store() -> dict[str, Workspace]:
    existing = getattr(app.state, "workspaces", None)
    if isinstance(existing, dict):
        return existing
    created: dict[str, Workspace] = {}
    setattr(app.state, "workspaces", created)
    return created


def _get_workspace_lock() -> threading.Lock:
    existing = getattr(app.state, "workspace_lock", None)
    if isinstance(existing, type(threading.Lock())):
        return existing
    created = threading.Lock()
    setattr(app.state, "workspace_lock", created)
    return created


def _build_workspace() -> Workspace:
    config = _get_config()
    workspace_id = f"ws_{uuid4().hex[:12]}"
    audit = _get_audit_trail()
    lifecycle = DraftLifecycleManager(
        _get_draft_store(),
        autosave_delay_seconds=config.THERAPYDOCS_AUTOSAVE_DELAY_SECONDS,
        timer_factory=getattr(app.state, "autosave_timer_factory", None),
        audit=audit,
        runtime_id=workspace_id,
    )
    editor = EditAmendmentController(
        lifecycle,
        _get_document_store(),
        policy=lambda: getattr(app.state, "edit_policy", None) or _get_config().THERAPYDOCS_EDIT_POLICY,
        audit=audit,
        runtime_id=workspace_id,
    )
    flow = EntryFlow(
        lifecycle,
        _get_client_directory(),
        editor,
        orphan_threshold_hours=config.THERAPYDOCS_ORPHAN_THRESHOLD_HOURS,
        spawn=getattr(app.state, "context_spawn", None),
    )
    generator = NarrativeGenerator(
        lifecycle,
        _get_narrative_feed(),
        settings_provider=_get_narrative_settings,
        debug_log_path=config.THERAPYDOCS_NARRATIVE_DEBUG_LOG,
        audit=audit,
        runtime_id=workspace_id,
    )
    return Workspace(workspace_id, lifecycle, editor, flow, generator)


def _require_workspace(workspace_id: str) -> Workspace:
    normalized = str(workspace_id or "").strip()
    with _get_workspace_lock():
        workspace = _get_workspace_store().get(normalized)
    if workspace is None:
        raise HTTPException(status_code=404, detail=f"Workspace not found: {normalized}")
    return workspace


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, (TransitionBlocked, GenerationInProgressError)):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(
        exc,
        (ClientNotFoundError, DocumentNotFoundError, DraftNotFoundError, GenerationNotFoundError),
    ):
        return HTTPException(status_code=404, detail=str(exc.args[0] if exc.args else exc))
    if isinstance(exc, (InvalidTransition, EditPolicyError, NothingToSubmitError, ValueError)):
        return HTTPException(status_code=400, detail=str(exc))
    logger.exception("Unhandled workspace error")
    return HTTPException(status_code=500, detail=str(exc) or exc.__class__.__name__)


def _serialize_workspace(workspace: Workspace) -> WorkspaceResponse:
    flow = workspace.flow
    lifecycle = workspace.lifecycle
    modal = flow.modal
    return WorkspaceResponse(
        workspace_id=workspace.workspace_id,
        view=flow.view,
        modal=ModalView(kind=modal.kind, payload=dict(modal.payload)) if modal else None,
        client_id=flow.client.id if flow.client else None,
        context_loading=flow.context_loading,
        form_type=lifecycle.form_type,
        draft_uuid=lifecycle.draft_uuid,
        draft_status=lifecycle.status,
        edit_mode=workspace.editor.mode,
        note=lifecycle.note.snapshot(),
        has_unsaved_changes=lifecycle.has_unsaved_changes(),
        duplicate_warnings=flow.duplicate_warnings,
        banner_visible=flow.banner_visible,
        search_text=flow.search_text,
        detail_expanded=flow.detail_expanded,
    )


def _serialize_narrative_job(job: NarrativeJob) -> NarrativeJobResponse:
    return NarrativeJobResponse.model_validate(
        {key: value for key, value in job.snapshot().items() if key in NarrativeJobResponse.model_fields}
    )


@app.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/clients", response_model=ClientListResponse)
async def clients_list(search: str = "") -> ClientListResponse:
    return ClientListResponse(clients=_get_client_directory().search(search))


@app.post("/clients", response_model=Client)
async def clients_create(payload: ClientCreateRequest) -> Client:
    if not _get_config().THERAPYDOCS_USE_MOCK_API:
        raise HTTPException(status_code=400, detail="Clients can only be registered against the mock API.")
    client = Client(
        id=f"client_{uuid4().hex[:12]}",
        created_at=payload.created_at or utc_now_iso(),
        **payload.model_dump(exclude={"created_at"}),
    )
    _get_client_directory().add(client)
    return client


@app.get("/clients/{client_id}/documents", response_model=DocumentsResponse)
async def client_documents(client_id: str) -> DocumentsResponse:
    try:
        _get_client_directory().get(client_id)
    except ClientNotFoundError as exc:
        raise _http_error(exc) from exc
    documents = _get_document_store().list(client_id)
    return DocumentsResponse(
        client_id=client_id,
        documents=documents,
        chains=group_amendment_chains(documents),
    )


@app.post("/clients/{client_id}/documents", response_model=Document)
async def client_documents_create(client_id: str, payload: DocumentCreateRequest) -> Document:
    if not _get_config().THERAPYDOCS_USE_MOCK_API:
        raise HTTPException(status_code=400, detail="Documents can only be seeded against the mock API.")
    try:
        _get_client_directory().get(client_id)
    except ClientNotFoundError as exc:
        raise _http_error(exc) from exc
    return _get_document_store().create(
        client_id,
        payload.document_type,
        payload.content,
        payload.status,
        date=payload.date,
    )


@app.post("/workspaces", response_model=WorkspaceResponse)
async def workspace_create() -> WorkspaceResponse:
    workspace = _build_workspace()
    with _get_workspace_lock():
        _get_workspace_store()[workspace.workspace_id] = workspace
    return _serialize_workspace(workspace)


@app.get("/workspaces/{workspace_id}", response_model=WorkspaceResponse)
async def workspace_get(workspace_id: str) -> WorkspaceResponse:
    return _serialize_workspace(_require_workspace(workspace_id))


@app.post("/workspaces/{workspace_id}/search", response_model=ClientListResponse)
async def workspace_search(workspace_id: str, payload: SearchRequest) -> ClientListResponse:
    workspace = _require_workspace(workspace_id)
    return ClientListResponse(clients=workspace.flow.set_search_text(payload.text))


@app.post("/workspaces/{workspace_id}/client", response_model=WorkspaceResponse)
async def workspace_select_client(workspace_id: str, payload: ClientSelectRequest) -> WorkspaceResponse:
    workspace = _require_workspace(workspace_id)
    try:
        workspace.flow.select_client(payload.client_id)
    except Exception as exc:
        raise _http_error(exc) from exc
    return _serialize_workspace(workspace)


@app.get("/workspaces/{workspace_id}/drafts", response_model=DraftListResponse)
async def workspace_drafts(workspace_id: str) -> DraftListResponse:
    workspace = _require_workspace(workspace_id)
    return DraftListResponse(
        drafts=[
            DraftListItem(
                uuid=item.uuid,
                form_type=item.form_type,
                session_date=item.session_date,
                saved_at=item.saved_at,
                saved_label=format_saved_at(item.saved_at),
            )
            for item in workspace.flow.drafts_for_client()
        ]
    )


@app.post("/workspaces/{workspace_id}/form", response_model=WorkspaceResponse)
async def workspace_select_form(workspace_id: str, payload: FormSelectRequest) -> WorkspaceResponse:
    workspace = _require_workspace(workspace_id)
    try:
        workspace.flow.select_form(payload.form_type)
    except Exception as exc:
        raise _http_error(exc) from exc
    return _serialize_workspace(workspace)


@app.post("/workspaces/{workspace_id}/back", response_model=WorkspaceResponse)
async def workspace_back(workspace_id: str) -> WorkspaceResponse:
    workspace = _require_workspace(workspace_id)
    try:
        workspace.flow.back()
    except Exception as exc:
        raise _http_error(exc) from exc
    return _serialize_workspace(workspace)


@app.post("/workspaces/{workspace_id}/modal", response_model=WorkspaceResponse)
async def workspace_resolve_modal(workspace_id: str, payload: ModalResolveRequest) -> WorkspaceResponse:
    workspace = _require_workspace(workspace_id)
    try:
        workspace.flow.resolve_modal(payload.action, draft_uuid=payload.draft_uuid, reason=payload.reason)
    except Exception as exc:
        raise _http_error(exc) from exc
    return _serialize_workspace(workspace)


@app.post("/workspaces/{workspace_id}/banner/dismiss", response_model=WorkspaceResponse)
async def workspace_dismiss_banner(workspace_id: str) -> WorkspaceResponse:
    workspace = _require_workspace(workspace_id)
    workspace.flow.dismiss_banner()
    return _serialize_workspace(workspace)


@app.patch("/workspaces/{workspace_id}/note", response_model=WorkspaceResponse)
async def workspace_update_note(workspace_id: str, payload: NoteUpdateRequest) -> WorkspaceResponse:
    workspace = _require_workspace(workspace_id)
    try:
        workspace.flow.update_note(payload.changes)
    except Exception as exc:
        raise _http_error(exc) from exc
    return _serialize_workspace(workspace)


@app.post("/workspaces/{workspace_id}/draft/save", response_model=DraftSaveResponse)
async def workspace_save_draft(workspace_id: str) -> DraftSaveResponse:
    workspace = _require_workspace(workspace_id)
    saved = workspace.lifecycle.save_now()
    return DraftSaveResponse(saved=saved, workspace=_serialize_workspace(workspace))


@app.post("/workspaces/{workspace_id}/documents/{document_id}/edit", response_model=WorkspaceResponse)
async def workspace_edit_document(workspace_id: str, document_id: str) -> WorkspaceResponse:
    workspace = _require_workspace(workspace_id)
    try:
        workspace.flow.request_edit(document_id)
    except Exception as exc:
        raise _http_error(exc) from exc
    return _serialize_workspace(workspace)


@app.post("/workspaces/{workspace_id}/submit", response_model=SubmitResponse)
async def workspace_submit(workspace_id: str) -> SubmitResponse:
    workspace = _require_workspace(workspace_id)
    try:
        document = workspace.flow.submit()
    except Exception as exc:
        raise _http_error(exc) from exc
    return SubmitResponse(document=document, workspace=_serialize_workspace(workspace))


@app.post("/workspaces/{workspace_id}/narrative/jobs/start", response_model=NarrativeJobResponse)
async def narrative_job_start(workspace_id: str) -> NarrativeJobResponse:
    workspace = _require_workspace(workspace_id)
    if workspace.flow.view != "workspace":
        raise HTTPException(status_code=400, detail="Open a note before generating a narrative.")
    try:
        job = workspace.generator.start(workspace.flow.client, workspace.flow.context)
    except Exception as exc:
        raise _http_error(exc) from exc
    return _serialize_narrative_job(job)


@app.get("/workspaces/{workspace_id}/narrative/jobs/{job_id}", response_model=NarrativeJobResponse)
async def narrative_job_status(workspace_id: str, job_id: str) -> NarrativeJobResponse:
    workspace = _require_workspace(workspace_id)
    normalized_job_id = str(job_id or "").strip()
    if not normalized_job_id:
        raise HTTPException(status_code=400, detail="job_id is required.")
    try:
        job = workspace.generator.get_job(normalized_job_id)
    except GenerationNotFoundError as exc:
        raise _http_error(exc) from exc
    return _serialize_narrative_job(job)


@app.post("/workspaces/{workspace_id}/narrative/jobs/{job_id}/stop", response_model=NarrativeJobResponse)
async def narrative_job_stop(workspace_id: str, job_id: str) -> NarrativeJobResponse:
    workspace = _require_workspace(workspace_id)
    try:
        job = workspace.generator.stop(str(job_id or "").strip())
    except GenerationNotFoundError as exc:
        raise _http_error(exc) from exc
    return _serialize_narrative_job(job)


@app.get("/workspaces/{workspace_id}/audit")
async def workspace_audit(workspace_id: str) -> dict[str, Any]:
    workspace = _require_workspace(workspace_id)
    events = _get_audit_trail().events(workspace.workspace_id)
    return {"events": [item.model_dump() for item in events]}
