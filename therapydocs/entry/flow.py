from __future__ import annotations

"""
Drive a clinician from client selection to an editable workspace.

Design intent:
- Views move client-select -> form-select -> workspace, and back.
- One modal at a time; while it is open every transition is refused.
- Client context loads in the background; a failed load degrades to empty context.
- Duplicate warnings are recomputed only when client, session date or context changes.
- Navigating back never deletes a bound draft unless the clinician discards it.
"""

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, List, Optional

from therapydocs.drafts.lifecycle import DraftLifecycleManager
from therapydocs.duplicates.detector import detect_duplicates
from therapydocs.internal_core.client_directory import ClientDirectory
from therapydocs.internal_core.contracts import (
    Client,
    ClientContext,
    Document,
    Draft,
    DuplicateWarnings,
    EntryView,
    ModalKind,
)
from therapydocs.internal_core.observable import Observable
from therapydocs.note.editing import EditAmendmentController
from therapydocs.utils.dates import today_iso, utc_now

logger = logging.getLogger(__name__)

Spawn = Callable[[Callable[[], None]], None]

MODAL_ACTIONS: dict[str, frozenset[str]] = {
    "draft-selection": frozenset({"continue", "fresh", "cancel"}),
    "exit-confirm": frozenset({"save", "discard", "cancel"}),
    "client-switch": frozenset({"save", "move", "discard", "cancel"}),
    "amendment-reason": frozenset({"confirm", "cancel"}),
    "duplicate-warning": frozenset({"acknowledge"}),
}


class EntryFlowError(RuntimeError):
    pass


class TransitionBlocked(EntryFlowError):
    """A modal is open and must be resolved first."""


class InvalidTransition(EntryFlowError):
    pass


@dataclass(frozen=True)
class Modal:
    kind: ModalKind
    payload: dict[str, Any] = field(default_factory=dict)


def thread_spawn(target: Callable[[], None]) -> None:
    worker = threading.Thread(target=target, daemon=True)
    worker.start()


class EntryFlow(Observable):
    def __init__(
        self,
        lifecycle: DraftLifecycleManager,
        clients: ClientDirectory,
        editor: EditAmendmentController,
        *,
        orphan_threshold_hours: float = 24,
        spawn: Optional[Spawn] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        super().__init__()
        self._lifecycle = lifecycle
        self._clients = clients
        self._editor = editor
        self._orphan_threshold_hours = orphan_threshold_hours
        self._spawn: Spawn = spawn or thread_spawn
        self._clock = clock or utc_now
        self._lock = threading.RLock()

        self._view: EntryView = "client-select"
        self._modal: Optional[Modal] = None
        self._client: Optional[Client] = None
        self._context: Optional[ClientContext] = None
        self._context_loading = False
        self._context_token = 0
        self._search_text = ""
        self._detail_expanded = False
        self._warnings = DuplicateWarnings()
        self._warning_key: tuple[Any, ...] = ()
        self._acknowledged_key: tuple[Any, ...] = ()
        self._banner_dismissed_key: tuple[Any, ...] = ()

        self._lifecycle.subscribe(self._on_lifecycle_change)

    @property
    def view(self) -> EntryView:
        return self._view

    @property
    def modal(self) -> Optional[Modal]:
        return self._modal

    @property
    def client(self) -> Optional[Client]:
        return self._client

    @property
    def context(self) -> Optional[ClientContext]:
        return self._context

    @property
    def context_loading(self) -> bool:
        return self._context_loading

    @property
    def form_type(self) -> str:
        return self._lifecycle.form_type

    @property
    def lifecycle(self) -> DraftLifecycleManager:
        return self._lifecycle

    @property
    def editor(self) -> EditAmendmentController:
        return self._editor

    @property
    def search_text(self) -> str:
        return self._search_text

    @property
    def detail_expanded(self) -> bool:
        return self._detail_expanded

    @property
    def duplicate_warnings(self) -> DuplicateWarnings:
        return self._warnings

    @property
    def banner_visible(self) -> bool:
        return self._warnings.show_banner and self._banner_dismissed_key != self._warning_key

    def set_search_text(self, text: str) -> List[Client]:
        self._search_text = str(text or "")
        return self._clients.search(self._search_text)

    def set_detail_expanded(self, expanded: bool) -> None:
        self._detail_expanded = bool(expanded)

    def dismiss_banner(self) -> None:
        self._banner_dismissed_key = self._warning_key

    def drafts_for_client(self) -> List[Draft]:
        """Unsubmitted drafts for the active client, across all form types."""
        if self._client is None:
            return []
        return [
            item
            for item in self._lifecycle.store.get_for_client(self._client.id)
            if not item.saved_to_backend
        ]

    def _set_view(self, view: EntryView) -> None:
        if view == self._view:
            return
        self._view = view
        self._notify("entry_view", view)

    def _open_modal(self, kind: ModalKind, payload: Optional[dict[str, Any]] = None) -> None:
        self._modal = Modal(kind=kind, payload=dict(payload or {}))
        self._notify("modal", self._modal)

    def _close_modal(self) -> None:
        if self._modal is None:
            return
        self._modal = None
        self._notify("modal", None)

    def _ensure_unblocked(self) -> None:
        if self._modal is not None:
            raise TransitionBlocked(f"Resolve the open {self._modal.kind} dialog first.")

    def _reset_browsing(self) -> None:
        self._search_text = ""
        self._detail_expanded = False

    def select_client(self, client_id: str) -> None:
        with self._lock:
            self._ensure_unblocked()
            client = self._clients.get(client_id)
            if self._client is not None and client.id == self._client.id:
                if self._view == "client-select":
                    self._set_view("form-select")
                return
            if self._view == "workspace" and self._lifecycle.note.has_content():
                self._open_modal(
                    "client-switch",
                    {"from_client_id": self._client.id if self._client else None, "to_client_id": client.id},
                )
                return
            if self._view == "workspace":
                form_type = self._lifecycle.form_type
                self._lifecycle.release()
                self._editor.reset()
                self._activate_client(client)
                self._enter_form(form_type)
                return
            self._activate_client(client)
            self._set_view("form-select")

    def _activate_client(self, client: Client) -> None:
        self._client = client
        self._context = None
        self._context_loading = True
        self._context_token += 1
        token = self._context_token
        self._notify("client", client)
        self._refresh_warnings()
        self._spawn(lambda: self._load_context(client.id, token))

    def refresh_context(self) -> None:
        with self._lock:
            if self._client is None:
                return
            self._context_loading = True
            self._context_token += 1
            token = self._context_token
            client_id = self._client.id
        self._spawn(lambda: self._load_context(client_id, token))

    def _load_context(self, client_id: str, token: int) -> None:
        try:
            context = self._clients.load_context(client_id)
        except Exception as exc:
            logger.warning("Client context load failed for client_id=%s: %s", client_id, exc)
            context = ClientContext()
        with self._lock:
            if token != self._context_token:
                return
            self._context = context
            self._context_loading = False
            self._notify("client_context", context)
            self._refresh_warnings()

    def select_form(self, form_type: str) -> None:
        with self._lock:
            self._ensure_unblocked()
            if self._client is None or self._view == "client-select":
                raise InvalidTransition("Select a client before choosing a form.")
            if self._view == "workspace":
                if form_type == self._lifecycle.form_type:
                    return
                if self._lifecycle.note.has_content():
                    self._lifecycle.keep_draft()
                self._lifecycle.release()
                self._editor.reset()
            self._enter_form(form_type)

    def _enter_form(self, form_type: str) -> None:
        assert self._client is not None
        drafts = [
            item
            for item in self._lifecycle.store.get_for_client(self._client.id)
            if item.form_type == form_type and not item.saved_to_backend
        ]
        if drafts:
            self._set_view("form-select")
            self._open_modal(
                "draft-selection",
                {
                    "form_type": form_type,
                    "drafts": [
                        {"uuid": item.uuid, "session_date": item.session_date, "saved_at": item.saved_at}
                        for item in drafts
                    ],
                },
            )
            return
        self._lifecycle.mint(self._client.id, form_type, today_iso(self._clock()))
        self._set_view("workspace")
        self._refresh_warnings()

    def back(self) -> None:
        with self._lock:
            self._ensure_unblocked()
            if self._view == "workspace":
                if self._lifecycle.note.has_content():
                    self._open_modal("exit-confirm", {"draft_uuid": self._lifecycle.draft_uuid})
                    return
                self._lifecycle.release()
                self._editor.reset()
                self._reset_browsing()
                self._set_view("form-select")
                self._refresh_warnings()
            elif self._view == "form-select":
                self._client = None
                self._context = None
                self._context_loading = False
                self._context_token += 1
                self._reset_browsing()
                self._set_view("client-select")
                self._notify("client", None)
                self._refresh_warnings()
            else:
                raise InvalidTransition("Already at client selection.")

    def request_edit(self, document_id: str) -> None:
        with self._lock:
            self._ensure_unblocked()
            if self._client is None:
                raise InvalidTransition("Select a client before editing a document.")
            if self._view == "workspace" and self._lifecycle.note.has_content():
                self._lifecycle.keep_draft()
            policy = self._editor.request_edit(self._client.id, document_id)
            if policy == "direct-edit":
                self._set_view("workspace")
                self._refresh_warnings()
            else:
                self._open_modal("amendment-reason", {"document_id": document_id})

    def update_note(self, changes: dict[str, Any]) -> None:
        if self._view != "workspace":
            raise InvalidTransition("The note can only be edited in the workspace.")
        self._editor.guard_changes(changes)
        self._lifecycle.update_note(changes)

    def submit(self) -> Document:
        with self._lock:
            self._ensure_unblocked()
            if self._view != "workspace":
                raise InvalidTransition("Nothing is open to submit.")
            document = self._editor.submit()
            self._set_view("form-select")
            self._refresh_warnings()
        self.refresh_context()
        return document

    def resolve_modal(self, action: str, *, draft_uuid: str = "", reason: str = "") -> None:
        with self._lock:
            modal = self._modal
            if modal is None:
                raise InvalidTransition("No dialog is open.")
            if action not in MODAL_ACTIONS[modal.kind]:
                raise InvalidTransition(f"Unsupported action {action!r} for {modal.kind}.")
            handler = {
                "draft-selection": self._resolve_draft_selection,
                "exit-confirm": self._resolve_exit_confirm,
                "client-switch": self._resolve_client_switch,
                "amendment-reason": self._resolve_amendment_reason,
                "duplicate-warning": self._resolve_duplicate_warning,
            }[modal.kind]
            handler(modal, action, draft_uuid=draft_uuid, reason=reason)

    def _resolve_draft_selection(self, modal: Modal, action: str, **kwargs: str) -> None:
        if action == "cancel":
            self._close_modal()
            return
        assert self._client is not None
        if action == "continue":
            draft_uuid = kwargs.get("draft_uuid", "")
            offered = {item["uuid"] for item in modal.payload.get("drafts", [])}
            if draft_uuid not in offered:
                raise InvalidTransition("Choose one of the offered drafts.")
            self._close_modal()
            self._lifecycle.resume(draft_uuid)
        else:
            self._close_modal()
            self._lifecycle.mint(self._client.id, modal.payload["form_type"], today_iso(self._clock()))
        self._set_view("workspace")
        self._refresh_warnings()

    def _resolve_exit_confirm(self, modal: Modal, action: str, **kwargs: str) -> None:
        self._close_modal()
        if action == "cancel":
            return
        if action == "save":
            self._lifecycle.keep_draft()
            self._lifecycle.release()
        else:
            self._lifecycle.discard_draft()
        self._editor.reset()
        self._reset_browsing()
        self._set_view("form-select")
        self._refresh_warnings()

    def _resolve_client_switch(self, modal: Modal, action: str, **kwargs: str) -> None:
        self._close_modal()
        if action == "cancel":
            return
        client = self._clients.get(modal.payload["to_client_id"])
        form_type = self._lifecycle.form_type
        self._lifecycle.switch_client(action, client.id)  # type: ignore[arg-type]
        self._editor.reset()
        self._activate_client(client)
        if action == "move":
            self._refresh_warnings()
            return
        self._enter_form(form_type)

    def _resolve_amendment_reason(self, modal: Modal, action: str, **kwargs: str) -> None:
        if action == "cancel":
            self._editor.cancel_pending()
            self._close_modal()
            return
        # Raises before any change when the reason is blank; the dialog stays open.
        self._editor.start_amendment(kwargs.get("reason", ""))
        self._close_modal()
        self._set_view("workspace")
        self._refresh_warnings()

    def _resolve_duplicate_warning(self, modal: Modal, action: str, **kwargs: str) -> None:
        self._acknowledged_key = self._warning_key
        self._close_modal()

    def _on_lifecycle_change(self, field_name: str, value: Any) -> None:
        if field_name == "session_date":
            with self._lock:
                self._refresh_warnings()

    def _refresh_warnings(self) -> None:
        client = self._client
        session_date = self._lifecycle.note.date if self._view == "workspace" else ""
        context = self._context
        key = (
            client.id if client else None,
            session_date,
            self._lifecycle.form_type,
            id(context),
        )
        if key == self._warning_key:
            return
        if client is None or not session_date:
            warnings = DuplicateWarnings()
        else:
            target = self._editor.target
            try:
                drafts = self._lifecycle.store.get_for_client(client.id)
            except Exception as exc:
                logger.warning("Draft lookup failed during duplicate check: %s", exc)
                drafts = []
            warnings = detect_duplicates(
                client=client,
                session_date=session_date,
                form_type=self._lifecycle.form_type,
                documents=context.documents if context else [],
                drafts=drafts,
                active_draft_uuid=self._lifecycle.draft_uuid,
                last_session_date=(
                    context.last_session.date if context and context.last_session else None
                ),
                exclude_document_id=(target.amendment_of or target.id) if target else None,
                orphan_threshold_hours=self._orphan_threshold_hours,
                now=self._clock(),
            )
        self._warning_key = key
        self._warnings = warnings
        self._notify("duplicate_warnings", warnings)
        if (
            warnings.show_blocking_modal
            and self._modal is None
            and self._acknowledged_key != key
        ):
            self._open_modal(
                "duplicate-warning",
                {
                    "has_backend_document": warnings.has_backend_document,
                    "has_other_draft": warnings.has_other_draft,
                    "predates_client": warnings.predates_client,
                },
            )
