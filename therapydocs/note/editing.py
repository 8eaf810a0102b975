from __future__ import annotations

"""
Decide how an edited document is written back.

Design intent:
- `direct-edit` mutates the backend record in place and binds no draft identity.
- `amendment-required` never touches the original; each amendment is a new
  document pointing at the chain's original, so chains stay one level deep.
- Preconditions are checked before any state changes.
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Literal, Mapping, Optional, Union

from therapydocs.drafts.lifecycle import DraftLifecycleManager
from therapydocs.internal_core.audit import AuditTrail, log_event
from therapydocs.internal_core.contracts import (
    AmendmentChain,
    Document,
    EditPolicy,
    document_type_for_form,
    form_type_for_document,
)
from therapydocs.internal_core.document_store import DocumentStore
from therapydocs.utils.dates import utc_now

from .models import Note


EditMode = Literal["new", "direct-edit", "amendment"]
PolicySource = Union[EditPolicy, Callable[[], EditPolicy]]


class EditPolicyError(ValueError):
    pass


class MissingAmendmentReason(EditPolicyError):
    pass


class MissingAmendmentTarget(EditPolicyError):
    pass


class AmendmentDateLocked(EditPolicyError):
    pass


class NothingToSubmitError(ValueError):
    pass


class EditAmendmentController:
    def __init__(
        self,
        lifecycle: DraftLifecycleManager,
        documents: DocumentStore,
        *,
        policy: PolicySource = "direct-edit",
        audit: Optional[AuditTrail] = None,
        runtime_id: str = "",
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._lifecycle = lifecycle
        self._documents = documents
        self._policy = policy
        self._audit = audit
        self._runtime_id = runtime_id
        self._clock = clock or utc_now
        self._mode: EditMode = "new"
        self._target: Optional[Document] = None
        self._pending_target: Optional[Document] = None
        self._reason = ""

    @property
    def policy(self) -> EditPolicy:
        return self._policy() if callable(self._policy) else self._policy

    @property
    def mode(self) -> EditMode:
        return self._mode

    @property
    def target(self) -> Optional[Document]:
        return self._target

    @property
    def pending_target(self) -> Optional[Document]:
        return self._pending_target

    @property
    def amendment_reason(self) -> str:
        return self._reason

    def reset(self) -> None:
        self._mode = "new"
        self._target = None
        self._pending_target = None
        self._reason = ""

    def request_edit(self, client_id: str, document_id: str) -> EditPolicy:
        """
        Open an existing document for editing under the current policy.

        Under `direct-edit` the content is loaded right away. Under
        `amendment-required` the document is held until a reason is supplied
        through `start_amendment`.
        """
        document = self._documents.get(client_id, document_id)
        policy = self.policy
        if policy == "direct-edit":
            self._lifecycle.load_detached(
                client_id,
                form_type_for_document(document.document_type),
                Note.reconcile(document.content),
            )
            self._mode = "direct-edit"
            self._target = document
            self._pending_target = None
            self._reason = ""
        else:
            self._pending_target = document
        return policy

    def start_amendment(self, reason: str, document: Optional[Document] = None) -> str:
        target = document or self._pending_target
        if target is None:
            raise MissingAmendmentTarget("An amendment needs the document being amended.")
        if not str(reason or "").strip():
            raise MissingAmendmentReason("An amendment reason is required.")

        draft_uuid = self._lifecycle.mint(
            target.client_id,
            form_type_for_document(target.document_type),
            target.date,
        )
        note = Note.reconcile(target.content).model_copy(update={"date": target.date})
        self._lifecycle.replace_note(note)
        self._mode = "amendment"
        self._target = target
        self._pending_target = None
        self._reason = reason.strip()
        log_event(
            self._audit,
            self._runtime_id,
            "AMENDMENT_STARTED",
            "amendment_started",
            f"document_type={target.document_type}",
        )
        return draft_uuid

    def cancel_pending(self) -> None:
        self._pending_target = None

    def guard_changes(self, changes: Mapping[str, Any]) -> None:
        if self._mode == "amendment" and self._target is not None and "date" in changes:
            if changes["date"] != self._target.date:
                raise AmendmentDateLocked("The session date of an amendment is fixed to the original's date.")

    def submit(self) -> Document:
        client_id = self._lifecycle.client_id
        note = self._lifecycle.note
        if not client_id:
            raise NothingToSubmitError("No client is selected.")
        if not note.has_content():
            raise NothingToSubmitError("The note has no content to submit.")
        content: Dict[str, Any] = note.snapshot()

        if self._mode == "direct-edit" and self._target is not None:
            document = self._documents.update(
                client_id, self._target.id, content=content, status="complete"
            )
            log_event(self._audit, self._runtime_id, "DOCUMENT_UPDATED", "direct_edit")
            self._lifecycle.release()
        elif self._mode == "amendment" and self._target is not None:
            document = self._documents.create(
                client_id,
                self._target.document_type,
                content,
                "complete",
                date=self._target.date,
                amendment_of=self._target.amendment_of or self._target.id,
                amendment_reason=self._reason,
                amendment_date=self._clock().isoformat(),
            )
            log_event(self._audit, self._runtime_id, "DOCUMENT_CREATED", "amendment_created")
            self._lifecycle.retire_after_submit()
        else:
            document = self._documents.create(
                client_id,
                document_type_for_form(self._lifecycle.form_type),
                content,
                "complete",
                date=note.date,
            )
            log_event(self._audit, self._runtime_id, "DOCUMENT_CREATED", "document_created")
            self._lifecycle.retire_after_submit()

        self.reset()
        return document


def group_amendment_chains(documents: List[Document]) -> List[AmendmentChain]:
    """Group originals with their amendments, newest amendment first."""
    by_id = {item.id: item for item in documents}
    amendments: Dict[str, List[Document]] = {}
    chains: List[AmendmentChain] = []
    for item in documents:
        if item.amendment_of and item.amendment_of in by_id:
            amendments.setdefault(item.amendment_of, []).append(item)
    for item in documents:
        if item.amendment_of and item.amendment_of in by_id:
            continue
        linked = sorted(
            amendments.get(item.id, []),
            key=lambda doc: doc.amendment_date or doc.created_at,
            reverse=True,
        )
        chains.append(AmendmentChain(original=item, amendments=linked))
    chains.sort(key=lambda chain: (chain.original.date, chain.original.created_at), reverse=True)
    return chains
