from datetime import datetime, timezone
from typing import Callable

import pytest

from therapydocs.drafts.lifecycle import DraftLifecycleManager
from therapydocs.entry import EntryFlow, InvalidTransition, TransitionBlocked
from therapydocs.internal_core.client_directory import InMemoryClientDirectory
from therapydocs.internal_core.contracts import Client, ClientContext
from therapydocs.internal_core.document_store import InMemoryDocumentStore
from therapydocs.internal_core.draft_store import InMemoryDraftStore
from therapydocs.note.editing import AmendmentDateLocked, EditAmendmentController, MissingAmendmentReason
from therapydocs.note.models import Note

FIXED_NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


class _NoTimer:
    def cancel(self) -> None:
        return None


def _run_inline(target: Callable[[], None]) -> None:
    target()


def _clients() -> list[Client]:
    return [
        Client(id="client_1", name="ReTo", client_type="couple", created_at="2025-01-15T09:00:00+00:00"),
        Client(id="client_2", name="Alex", created_at="2025-02-01T09:00:00+00:00"),
    ]


def _flow(policy: str = "amendment-required", directory=None, spawn=_run_inline):
    documents = InMemoryDocumentStore()
    lifecycle = DraftLifecycleManager(InMemoryDraftStore(), timer_factory=lambda delay, callback: _NoTimer())
    editor = EditAmendmentController(lifecycle, documents, policy=policy, clock=lambda: FIXED_NOW)
    flow = EntryFlow(
        lifecycle,
        directory or InMemoryClientDirectory(documents, _clients()),
        editor,
        spawn=spawn,
        clock=lambda: FIXED_NOW,
    )
    return flow, documents


def test_client_then_form_opens_a_fresh_workspace() -> None:
    flow, _ = _flow()
    views: list[str] = []
    flow.subscribe(lambda field, value: views.append(value) if field == "entry_view" else None)

    flow.select_client("client_1")
    assert flow.view == "form-select"
    assert flow.context_loading is False
    assert flow.context == ClientContext()

    flow.select_form("Progress Note")
    assert flow.view == "workspace"
    assert flow.modal is None
    assert flow.lifecycle.draft_uuid is not None
    assert flow.lifecycle.note.date == "2025-03-10"
    assert views == ["form-select", "workspace"]


def test_select_form_requires_a_client() -> None:
    flow, _ = _flow()
    with pytest.raises(InvalidTransition):
        flow.select_form("Progress Note")
    with pytest.raises(InvalidTransition):
        flow.back()


def test_back_with_content_asks_before_leaving_and_blocks_other_transitions() -> None:
    flow, _ = _flow()
    flow.select_client("client_1")
    flow.select_form("Progress Note")
    draft_uuid = flow.lifecycle.draft_uuid
    flow.update_note({"purpose": "Grounding practice"})

    flow.back()
    assert flow.modal is not None and flow.modal.kind == "exit-confirm"
    with pytest.raises(TransitionBlocked):
        flow.select_client("client_2")
    with pytest.raises(InvalidTransition):
        flow.resolve_modal("move")

    flow.resolve_modal("save")
    assert flow.view == "form-select"
    assert flow.lifecycle.draft_uuid is None
    assert flow.lifecycle.store.get(draft_uuid).data["purpose"] == "Grounding practice"


def test_exit_discard_deletes_the_draft() -> None:
    flow, _ = _flow()
    flow.select_client("client_1")
    flow.select_form("Progress Note")
    draft_uuid = flow.lifecycle.draft_uuid
    flow.update_note({"purpose": "Scratch"})

    flow.back()
    flow.resolve_modal("discard")

    assert flow.view == "form-select"
    assert flow.lifecycle.store.get(draft_uuid) is None


def test_back_without_content_leaves_directly() -> None:
    flow, _ = _flow()
    flow.set_search_text("re")
    flow.select_client("client_1")
    flow.select_form("Progress Note")
    flow.back()
    assert flow.view == "form-select"
    assert flow.modal is None

    flow.back()
    assert flow.view == "client-select"
    assert flow.client is None
    assert flow.search_text == ""


def test_existing_draft_offers_continue() -> None:
    flow, _ = _flow()
    flow.select_client("client_1")
    flow.select_form("Progress Note")
    draft_uuid = flow.lifecycle.draft_uuid
    flow.update_note({"purpose": "Resume me"})
    flow.back()
    flow.resolve_modal("save")

    flow.select_form("Progress Note")
    assert flow.view == "form-select"
    assert flow.modal is not None and flow.modal.kind == "draft-selection"
    assert [item["uuid"] for item in flow.modal.payload["drafts"]] == [draft_uuid]
    with pytest.raises(InvalidTransition):
        flow.resolve_modal("continue", draft_uuid="not_offered")

    flow.resolve_modal("continue", draft_uuid=draft_uuid)
    assert flow.view == "workspace"
    assert flow.lifecycle.draft_uuid == draft_uuid
    assert flow.lifecycle.note.purpose == "Resume me"
    assert flow.modal is None


def test_fresh_draft_next_to_existing_one_raises_duplicate_warning() -> None:
    flow, _ = _flow()
    flow.select_client("client_1")
    flow.select_form("Progress Note")
    flow.update_note({"purpose": "First"})
    flow.back()
    flow.resolve_modal("save")

    flow.select_form("Progress Note")
    flow.resolve_modal("fresh")

    assert flow.view == "workspace"
    assert flow.duplicate_warnings.has_other_draft is True
    assert flow.modal is not None and flow.modal.kind == "duplicate-warning"
    flow.resolve_modal("acknowledge")
    assert flow.modal is None

    flow.update_note({"date": "2025-03-11"})
    assert flow.duplicate_warnings.has_other_draft is False
    assert flow.modal is None


def test_submitted_document_on_same_date_opens_blocking_warning() -> None:
    flow, documents = _flow()
    documents.create("client_1", "progress_note", Note(date="2025-03-10").snapshot(), "complete", date="2025-03-10")

    flow.select_client("client_1")
    flow.select_form("Progress Note")

    assert flow.duplicate_warnings.has_backend_document is True
    assert flow.banner_visible is False
    assert flow.modal is not None and flow.modal.kind == "duplicate-warning"
    assert flow.modal.payload["has_backend_document"] is True


def test_client_switch_move_keeps_content_under_new_client() -> None:
    flow, _ = _flow()
    flow.select_client("client_1")
    flow.select_form("Progress Note")
    flow.update_note({"purpose": "Wrong client"})

    flow.select_client("client_2")
    assert flow.modal is not None and flow.modal.kind == "client-switch"
    assert flow.modal.payload == {"from_client_id": "client_1", "to_client_id": "client_2"}

    flow.resolve_modal("move")
    assert flow.view == "workspace"
    assert flow.client is not None and flow.client.id == "client_2"
    assert flow.lifecycle.client_id == "client_2"
    assert flow.lifecycle.note.purpose == "Wrong client"
    assert flow.lifecycle.store.get_for_client("client_1") == []


def test_client_switch_save_opens_new_client_form() -> None:
    flow, _ = _flow()
    flow.select_client("client_1")
    flow.select_form("Progress Note")
    old_uuid = flow.lifecycle.draft_uuid
    flow.update_note({"purpose": "Keep for client 1"})

    flow.select_client("client_2")
    flow.resolve_modal("save")

    assert flow.view == "workspace"
    assert flow.lifecycle.client_id == "client_2"
    assert flow.lifecycle.draft_uuid != old_uuid
    assert flow.lifecycle.note.has_content() is False
    assert flow.lifecycle.store.get(old_uuid).client_id == "client_1"


def test_client_switch_cancel_keeps_everything() -> None:
    flow, _ = _flow()
    flow.select_client("client_1")
    flow.select_form("Progress Note")
    flow.update_note({"purpose": "Stay"})

    flow.select_client("client_2")
    flow.resolve_modal("cancel")

    assert flow.client is not None and flow.client.id == "client_1"
    assert flow.lifecycle.note.purpose == "Stay"


class _BrokenDirectory(InMemoryClientDirectory):
    def load_context(self, client_id: str) -> ClientContext:
        raise ConnectionError("records service unavailable")


def test_context_load_failure_degrades_to_empty_context(caplog) -> None:
    flow, _ = _flow(directory=_BrokenDirectory(InMemoryDocumentStore(), _clients()))
    flow.select_client("client_1")
    assert flow.context == ClientContext()
    assert flow.context_loading is False
    assert "records service unavailable" in caplog.text


def test_stale_context_load_is_ignored() -> None:
    deferred: list[Callable[[], None]] = []
    flow, _ = _flow(spawn=deferred.append)
    flow.select_client("client_1")
    flow.back()
    flow.select_client("client_2")
    assert flow.context_loading is True

    deferred[0]()
    assert flow.context is None
    assert flow.context_loading is True

    deferred[1]()
    assert flow.context == ClientContext()
    assert flow.context_loading is False


def test_amendment_reason_dialog_gates_the_workspace() -> None:
    flow, documents = _flow()
    original = documents.create(
        "client_1",
        "progress_note",
        Note(date="2025-03-03", purpose="Original").snapshot(),
        "complete",
        date="2025-03-03",
    )
    flow.select_client("client_1")

    flow.request_edit(original.id)
    assert flow.modal is not None and flow.modal.kind == "amendment-reason"

    with pytest.raises(MissingAmendmentReason):
        flow.resolve_modal("confirm", reason="  ")
    assert flow.modal is not None and flow.view == "form-select"

    flow.resolve_modal("confirm", reason="Corrected duration")
    assert flow.view == "workspace"
    assert flow.editor.mode == "amendment"
    assert flow.lifecycle.note.purpose == "Original"
    assert flow.modal is None

    with pytest.raises(AmendmentDateLocked):
        flow.update_note({"date": "2025-03-04"})

    flow.update_note({"purpose": "Amended"})
    amendment = flow.submit()
    assert amendment.amendment_of == original.id
    assert flow.view == "form-select"
    assert documents.get("client_1", original.id).content["purpose"] == "Original"


def test_direct_edit_goes_straight_to_workspace() -> None:
    flow, documents = _flow(policy="direct-edit")
    original = documents.create(
        "client_1", "progress_note", Note(date="2025-03-03", purpose="Typo").snapshot(), "complete", date="2025-03-03"
    )
    flow.select_client("client_1")
    flow.request_edit(original.id)

    assert flow.view == "workspace"
    assert flow.modal is None
    flow.update_note({"purpose": "Fixed"})
    flow.submit()
    assert documents.get("client_1", original.id).content["purpose"] == "Fixed"


def test_partial_session_date_clears_warnings_and_resumes() -> None:
    flow, documents = _flow()
    documents.create("client_1", "progress_note", Note(date="2025-03-10").snapshot(), "complete", date="2025-03-10")
    flow.select_client("client_1")
    flow.select_form("Progress Note")
    draft_uuid = flow.lifecycle.draft_uuid
    flow.resolve_modal("acknowledge")
    flow.update_note({"purpose": "Half-typed date"})

    flow.update_note({"date": "2025-03"})
    assert flow.duplicate_warnings.has_backend_document is False
    assert flow.duplicate_warnings.predates_client is False

    flow.back()
    flow.resolve_modal("save")
    assert flow.lifecycle.store.get(draft_uuid).session_date == "2025-03"

    flow.select_form("Progress Note")
    flow.resolve_modal("continue", draft_uuid=draft_uuid)
    assert flow.view == "workspace"
    assert flow.lifecycle.note.date == "2025-03"
    assert flow.modal is None


def test_client_switch_save_keeps_direct_edit_as_draft() -> None:
    flow, documents = _flow(policy="direct-edit")
    original = documents.create(
        "client_1", "progress_note", Note(date="2025-03-03", purpose="orig").snapshot(), "complete", date="2025-03-03"
    )
    flow.select_client("client_1")
    flow.request_edit(original.id)
    flow.update_note({"purpose": "edited text"})

    flow.select_client("client_2")
    assert flow.modal is not None and flow.modal.kind == "client-switch"
    flow.resolve_modal("save")

    kept = flow.lifecycle.store.get_for_client("client_1")
    assert [item.data["purpose"] for item in kept] == ["edited text"]
    assert kept[0].session_date == "2025-03-03"
    assert documents.get("client_1", original.id).content["purpose"] == "orig"
    assert flow.lifecycle.client_id == "client_2"


def test_exit_save_keeps_direct_edit_as_draft() -> None:
    flow, documents = _flow(policy="direct-edit")
    original = documents.create(
        "client_1", "progress_note", Note(date="2025-03-03", purpose="orig").snapshot(), "complete", date="2025-03-03"
    )
    flow.select_client("client_1")
    flow.request_edit(original.id)
    flow.update_note({"purpose": "edited text"})

    flow.back()
    flow.resolve_modal("save")

    assert flow.view == "form-select"
    kept = flow.lifecycle.store.get_for_client("client_1")
    assert [item.data["purpose"] for item in kept] == ["edited text"]
