from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

ClientType = Literal["individual", "couple", "family"]
SessionBasis = Literal["weekly", "biweekly", "as-needed", "other"]
DraftStatus = Literal["idle", "saving", "saved"]
EntryView = Literal["client-select", "form-select", "workspace"]
ModalKind = Literal[
    "draft-selection",
    "exit-confirm",
    "client-switch",
    "amendment-reason",
    "duplicate-warning",
]
EditPolicy = Literal["direct-edit", "amendment-required"]
DocumentStatus = Literal["draft", "complete"]

FORM_TYPES = (
    "Progress Note",
    "Diagnosis",
    "Treatment Plan",
    "Intake",
    "Consultation",
    "Discharge",
)


class Client(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str = Field(min_length=1)
    name: str
    client_type: ClientType = "individual"
    session_basis: Optional[SessionBasis] = None
    created_at: str
    risk_level: Optional[str] = None
    total_sessions: Optional[int] = None
    start_date: Optional[str] = None


class Draft(BaseModel):
    model_config = ConfigDict(extra="forbid")

    uuid: str
    client_id: str
    form_type: str
    session_date: str
    data: Dict[str, Any] = Field(default_factory=dict)
    saved_at: str
    saved_to_backend: bool = False


class Document(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    client_id: str
    document_type: str
    date: str
    content: Dict[str, Any] = Field(default_factory=dict)
    status: DocumentStatus = "complete"
    created_at: str
    updated_at: str
    amendment_of: Optional[str] = None
    amendment_reason: Optional[str] = None
    amendment_date: Optional[str] = None


class AmendmentChain(BaseModel):
    model_config = ConfigDict(extra="forbid")

    original: Document
    amendments: List[Document] = Field(default_factory=list)


class TreatmentPlanContext(BaseModel):
    model_config = ConfigDict(extra="forbid")

    goals: List[str] = Field(default_factory=list)
    target_symptoms: List[str] = Field(default_factory=list)
    notes: str = ""


class LastSessionContext(BaseModel):
    model_config = ConfigDict(extra="forbid")

    date: str
    narrative: str = ""


class ClientContext(BaseModel):
    model_config = ConfigDict(extra="forbid")

    documents: List[Document] = Field(default_factory=list)
    diagnosis: Optional[str] = None
    treatment_plan: Optional[TreatmentPlanContext] = None
    last_session: Optional[LastSessionContext] = None


class DuplicateWarnings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    has_backend_document: bool = False
    has_other_draft: bool = False
    predates_client: bool = False
    too_soon_for_basis: bool = False
    days_since_last_session: Optional[int] = None
    orphaned_drafts: List[Draft] = Field(default_factory=list)

    @property
    def has_critical(self) -> bool:
        return self.has_backend_document or self.has_other_draft or self.predates_client

    @property
    def has_info(self) -> bool:
        return self.too_soon_for_basis or bool(self.orphaned_drafts)

    @property
    def show_blocking_modal(self) -> bool:
        return self.has_critical

    @property
    def show_banner(self) -> bool:
        return self.has_info and not self.has_critical


AuditEventType = Literal[
    "DRAFT_CREATED",
    "DRAFT_RESUMED",
    "DRAFT_SAVED",
    "DRAFT_SAVE_FAILED",
    "DRAFT_DELETED",
    "CLIENT_SWITCHED",
    "AMENDMENT_STARTED",
    "DOCUMENT_CREATED",
    "DOCUMENT_UPDATED",
    "NARRATIVE_STARTED",
    "NARRATIVE_FINISHED",
    "NARRATIVE_FAILED",
    "ERROR",
]


class AuditEvent(BaseModel):
    model_config = ConfigDict(extra="forbid")

    ts_iso: str
    runtime_id: str
    type: AuditEventType
    code: str
    detail: str
    duration_ms: Optional[int] = None


_FORM_DOCUMENT_TYPES = {
    "Progress Note": "progress_note",
    "Diagnosis": "diagnosis",
    "Treatment Plan": "treatment_plan",
    "Intake": "intake",
    "Consultation": "consultation",
    "Discharge": "discharge",
}


def document_type_for_form(form_type: str) -> str:
    mapped = _FORM_DOCUMENT_TYPES.get(form_type)
    if mapped:
        return mapped
    return "_".join(str(form_type or "").strip().lower().split())


def form_type_for_document(document_type: str) -> str:
    for form_type, mapped in _FORM_DOCUMENT_TYPES.items():
        if mapped == document_type:
            return form_type
    return " ".join(part.capitalize() for part in str(document_type or "").split("_"))
