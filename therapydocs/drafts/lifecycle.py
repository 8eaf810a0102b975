from __future__ import annotations

"""
Own the live note and the draft identity bound to it.

Design intent:
- At most one draft uuid is bound to the live note at any time.
- Every edit cancels and reschedules a single pending autosave (debounce).
- Persistence failures are logged and reflected in status, never raised into editing.
- Client switches always end with one consistent (client, identity) pairing.
"""

import logging
import threading
from typing import Any, Callable, Literal, Mapping, Optional, Protocol

from therapydocs.internal_core.audit import AuditTrail, log_event
from therapydocs.internal_core.contracts import Draft, DraftStatus
from therapydocs.internal_core.draft_store import DraftStore
from therapydocs.internal_core.observable import Observable
from therapydocs.note.models import Note

logger = logging.getLogger(__name__)

SwitchResolution = Literal["save", "move", "discard"]


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


TimerFactory = Callable[[float, Callable[[], None]], TimerHandle]


class DraftNotFoundError(KeyError):
    pass


def thread_timer(delay_seconds: float, callback: Callable[[], None]) -> TimerHandle:
    timer = threading.Timer(delay_seconds, callback)
    timer.daemon = True
    timer.start()
    return timer


class DraftLifecycleManager(Observable):
    def __init__(
        self,
        store: DraftStore,
        *,
        autosave_delay_seconds: float = 2.0,
        timer_factory: Optional[TimerFactory] = None,
        audit: Optional[AuditTrail] = None,
        runtime_id: str = "",
    ):
        super().__init__()
        self._store = store
        self._delay = float(autosave_delay_seconds)
        self._timer_factory: TimerFactory = timer_factory or thread_timer
        self._audit = audit
        self._runtime_id = runtime_id
        self._lock = threading.RLock()
        self._note = Note()
        self._client_id: Optional[str] = None
        self._form_type = ""
        self._draft_uuid: Optional[str] = None
        self._baseline: Optional[dict[str, Any]] = None
        self._status: DraftStatus = "idle"
        self._pending: Optional[TimerHandle] = None
        self._pending_token = 0

    @property
    def store(self) -> DraftStore:
        return self._store

    @property
    def note(self) -> Note:
        with self._lock:
            return self._note

    @property
    def client_id(self) -> Optional[str]:
        return self._client_id

    @property
    def form_type(self) -> str:
        return self._form_type

    @property
    def draft_uuid(self) -> Optional[str]:
        return self._draft_uuid

    @property
    def status(self) -> DraftStatus:
        return self._status

    @property
    def save_pending(self) -> bool:
        return self._pending is not None

    def _set_status(self, status: DraftStatus) -> None:
        if status == self._status:
            return
        self._status = status
        self._notify("draft_status", status)

    def _cancel_pending(self) -> None:
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None
        self._pending_token += 1

    def _bind(
        self,
        *,
        client_id: Optional[str],
        form_type: str,
        draft_uuid: Optional[str],
        note: Note,
        baseline: Optional[dict[str, Any]] = None,
    ) -> None:
        self._cancel_pending()
        self._client_id = client_id
        self._form_type = form_type
        self._draft_uuid = draft_uuid
        self._note = note
        self._baseline = baseline
        self._set_status("idle")
        self._notify("draft_uuid", draft_uuid)

    def mint(self, client_id: str, form_type: str, session_date: str) -> str:
        draft_uuid = self._store.initialize(client_id, form_type, session_date)
        with self._lock:
            self._bind(
                client_id=client_id,
                form_type=form_type,
                draft_uuid=draft_uuid,
                note=Note(date=session_date),
            )
        log_event(self._audit, self._runtime_id, "DRAFT_CREATED", "draft_minted", f"form_type={form_type}")
        return draft_uuid

    def resume(self, draft_uuid: str) -> Draft:
        draft = self._store.get(draft_uuid)
        if draft is None:
            raise DraftNotFoundError(f"Unknown draft uuid: {draft_uuid}")
        note = Note.reconcile(draft.data)
        if not note.date:
            note = note.model_copy(update={"date": draft.session_date})
        with self._lock:
            self._bind(
                client_id=draft.client_id,
                form_type=draft.form_type,
                draft_uuid=draft.uuid,
                note=note,
            )
        log_event(self._audit, self._runtime_id, "DRAFT_RESUMED", "draft_resumed", f"form_type={draft.form_type}")
        return draft

    def load_detached(self, client_id: str, form_type: str, note: Note) -> None:
        """Load content that is edited against a backend record, with no draft identity."""
        with self._lock:
            self._bind(
                client_id=client_id,
                form_type=form_type,
                draft_uuid=None,
                note=note,
                baseline=note.snapshot(),
            )

    def release(self) -> None:
        """Unbind identity and clear the live note; stored drafts are left untouched."""
        with self._lock:
            self._bind(client_id=None, form_type="", draft_uuid=None, note=Note())

    def update_note(self, changes: Mapping[str, Any]) -> Note:
        with self._lock:
            previous_date = self._note.date
            self._note = self._note.with_changes(changes)
            note = self._note
        self._notify("note", note)
        if note.date != previous_date:
            self._notify("session_date", note.date)
        self.schedule_save()
        return note

    def replace_note(self, note: Note) -> None:
        with self._lock:
            previous_date = self._note.date
            self._note = note
        self._notify("note", note)
        if note.date != previous_date:
            self._notify("session_date", note.date)
        self.schedule_save()

    def schedule_save(self) -> None:
        with self._lock:
            self._cancel_pending()
            if not self._client_id or not self._draft_uuid:
                return
            if not self._note.has_content():
                return
            token = self._pending_token
            self._set_status("saving")
            self._pending = self._timer_factory(self._delay, lambda: self._on_timer(token))

    def _on_timer(self, token: int) -> None:
        with self._lock:
            if token != self._pending_token:
                return
            self._pending = None
        self.save_now()

    def save_now(self) -> bool:
        with self._lock:
            self._cancel_pending()
            draft_uuid = self._draft_uuid
            if not self._client_id or not draft_uuid or not self._note.has_content():
                self._set_status("idle")
                return False
            snapshot = self._note.snapshot()
        try:
            existing = self._store.get(draft_uuid)
            if existing is not None and snapshot["date"] and existing.session_date != snapshot["date"]:
                self._store.update_session_date(draft_uuid, snapshot["date"])
            saved = self._store.save(draft_uuid, snapshot)
        except Exception as exc:
            logger.exception("Draft save failed for uuid=%s", draft_uuid)
            log_event(self._audit, self._runtime_id, "DRAFT_SAVE_FAILED", "draft_save_error", str(exc))
            saved = False
        with self._lock:
            if draft_uuid != self._draft_uuid:
                return saved
            if saved:
                self._set_status("saved")
            else:
                logger.error("Failed to save draft uuid=%s", draft_uuid)
                self._set_status("idle")
        return saved

    def keep_draft(self) -> bool:
        """
        Persist the live note as a draft before it is released.

        Detached content (a direct edit of a backend record) has no identity;
        if it differs from what was loaded, a draft is minted for it first.
        """
        with self._lock:
            client_id = self._client_id
            form_type = self._form_type
            note = self._note
            detached = (
                self._draft_uuid is None
                and bool(client_id)
                and note.has_content()
                and note.snapshot() != self._baseline
            )
        if detached:
            try:
                draft_uuid = self._store.initialize(str(client_id), form_type, note.date)
            except Exception as exc:
                logger.exception("Draft mint failed for detached edit (client_id=%s)", client_id)
                log_event(self._audit, self._runtime_id, "DRAFT_SAVE_FAILED", "draft_mint_error", str(exc))
                return False
            with self._lock:
                self._draft_uuid = draft_uuid
                self._baseline = None
            self._notify("draft_uuid", draft_uuid)
            log_event(self._audit, self._runtime_id, "DRAFT_CREATED", "draft_kept_from_edit", f"form_type={form_type}")
        return self.save_now()

    def has_unsaved_changes(self) -> bool:
        with self._lock:
            if not self._client_id or not self._note.has_content():
                return False
            current = self._note.snapshot()
            draft_uuid = self._draft_uuid
            baseline = self._baseline
        if draft_uuid is None:
            return baseline is None or current != baseline
        try:
            draft = self._store.get(draft_uuid)
        except Exception:
            logger.exception("Draft lookup failed for uuid=%s", draft_uuid)
            return True
        if draft is None or not draft.data:
            return True
        return current != Note.reconcile(draft.data).snapshot()

    def switch_client(self, resolution: SwitchResolution, new_client_id: str) -> Optional[str]:
        """
        Resolve a client switch while the live note holds content.

        save: persist under the previous identity (minting one for a detached
              edit), then release it.
        move: re-home the content under a new identity for `new_client_id`,
              persist it there, and only then delete the previous draft.
        discard: delete the previous draft and clear the note.

        Returns the uuid bound afterwards (only `move` keeps one bound).
        """
        if resolution not in ("save", "move", "discard"):
            raise ValueError(f"Unsupported switch resolution: {resolution}")
        previous_uuid = self._draft_uuid
        new_uuid: Optional[str] = None
        if resolution == "save":
            self.keep_draft()
            self.release()
        elif resolution == "move":
            with self._lock:
                note = self._note
                form_type = self._form_type
            new_uuid = self._store.initialize(new_client_id, form_type, note.date)
            with self._lock:
                self._bind(client_id=new_client_id, form_type=form_type, draft_uuid=new_uuid, note=note)
            moved = self.save_now()
            if previous_uuid and moved:
                self._store.delete(previous_uuid)
                log_event(self._audit, self._runtime_id, "DRAFT_DELETED", "draft_moved")
            elif previous_uuid:
                logger.warning("Kept previous draft uuid=%s; save under new client failed", previous_uuid)
        else:
            self.discard_draft()
        log_event(
            self._audit,
            self._runtime_id,
            "CLIENT_SWITCHED",
            f"client_switch_{resolution}",
            f"had_identity={previous_uuid is not None}",
        )
        return new_uuid

    def discard_draft(self) -> None:
        """Delete the bound draft outright and clear the note."""
        draft_uuid = self._draft_uuid
        if draft_uuid:
            self._store.delete(draft_uuid)
            log_event(self._audit, self._runtime_id, "DRAFT_DELETED", "draft_discarded")
        self.release()

    def retire_after_submit(self) -> None:
        """Mark the bound draft as persisted to the backend, then remove it."""
        draft_uuid = self._draft_uuid
        if draft_uuid:
            try:
                self._store.mark_saved_to_backend(draft_uuid)
                self._store.delete(draft_uuid)
            except Exception:
                logger.exception("Draft retirement failed for uuid=%s", draft_uuid)
            else:
                log_event(self._audit, self._runtime_id, "DRAFT_DELETED", "draft_submitted")
        self.release()
