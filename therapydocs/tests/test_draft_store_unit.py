import json
from datetime import datetime, timedelta, timezone

import pytest

from therapydocs.internal_core.draft_store import InMemoryDraftStore, JsonDirectoryDraftStore, _IndexedDraftStore


class _Clock:
    def __init__(self) -> None:
        self.now = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


def test_in_memory_store_round_trips_and_copies_data() -> None:
    store = InMemoryDraftStore()
    draft_uuid = store.initialize("client_1", "Progress Note", "2025-03-10")
    data = {"purpose": "Review week", "interventions": [{"label": "CBT"}]}
    assert store.save(draft_uuid, data) is True

    data["interventions"].append({"label": "mutated"})
    loaded = store.get(draft_uuid)
    assert loaded is not None
    assert loaded.data["interventions"] == [{"label": "CBT"}]

    loaded.data["purpose"] = "changed by caller"
    assert store.get(draft_uuid).data["purpose"] == "Review week"


def test_save_and_metadata_updates_on_unknown_uuid_return_false() -> None:
    store = InMemoryDraftStore()
    assert store.save("missing", {"purpose": "x"}) is False
    assert store.update_session_date("missing", "2025-03-11") is False
    assert store.mark_saved_to_backend("missing") is False


def test_get_for_client_orders_by_saved_at_and_filters_by_date() -> None:
    clock = _Clock()
    store = InMemoryDraftStore(clock=clock)
    first = store.initialize("client_1", "Progress Note", "2025-03-10")
    clock.advance(minutes=5)
    second = store.initialize("client_1", "Intake", "2025-03-11")
    store.initialize("client_2", "Progress Note", "2025-03-10")

    assert [item.uuid for item in store.get_for_client("client_1")] == [second, first]
    assert [item.uuid for item in store.get_for_date("client_1", "2025-03-10")] == [first]


def test_find_orphaned_and_cleanup_old_saved() -> None:
    clock = _Clock()
    store = InMemoryDraftStore(clock=clock)
    orphan = store.initialize("client_1", "Progress Note", "2025-03-01")
    submitted = store.initialize("client_1", "Progress Note", "2025-03-02")
    store.mark_saved_to_backend(submitted)
    clock.advance(hours=30)

    assert [item.uuid for item in store.find_orphaned("client_1", 24)] == [orphan]

    clock.advance(days=8)
    assert store.cleanup_old_saved(7) == 1
    assert store.get(submitted) is None
    assert store.get(orphan) is not None


def test_json_store_persists_across_instances(tmp_path) -> None:
    store = JsonDirectoryDraftStore(tmp_path)
    draft_uuid = store.initialize("client_1", "Progress Note", "2025-03-10")
    store.save(draft_uuid, {"purpose": "Grounding"})
    store.update_session_date(draft_uuid, "2025-03-11")

    reopened = JsonDirectoryDraftStore(tmp_path)
    loaded = reopened.get(draft_uuid)
    assert loaded is not None
    assert loaded.data == {"purpose": "Grounding"}
    assert loaded.session_date == "2025-03-11"
    assert json.loads((tmp_path / "index_client_1.json").read_text(encoding="utf-8")) == [draft_uuid]


def test_json_store_heals_index_when_record_is_missing(tmp_path) -> None:
    store = JsonDirectoryDraftStore(tmp_path)
    kept = store.initialize("client_1", "Progress Note", "2025-03-10")
    lost = store.initialize("client_1", "Progress Note", "2025-03-11")
    (tmp_path / f"draft_{lost}.json").unlink()

    assert [item.uuid for item in store.get_for_client("client_1")] == [kept]
    assert json.loads((tmp_path / "index_client_1.json").read_text(encoding="utf-8")) == [kept]


def test_json_store_delete_removes_record_and_index_entry(tmp_path) -> None:
    store = JsonDirectoryDraftStore(tmp_path)
    draft_uuid = store.initialize("client_1", "Progress Note", "2025-03-10")
    store.delete(draft_uuid)
    store.delete(draft_uuid)

    assert store.get(draft_uuid) is None
    assert store.get_for_client("client_1") == []


def test_indexed_store_base_requires_record_io() -> None:
    with pytest.raises(TypeError):
        _IndexedDraftStore()


def test_json_store_keeps_unsafe_ids_inside_its_root(tmp_path) -> None:
    root = tmp_path / "drafts"
    store = JsonDirectoryDraftStore(root)
    draft_uuid = store.initialize("../escape", "Progress Note", "2025-03-10")
    assert store.save(draft_uuid, {"purpose": "Contained"}) is True

    assert not (tmp_path / "escape.json").exists()
    assert {path.parent for path in tmp_path.rglob("*.json")} == {root}
    drafts = JsonDirectoryDraftStore(root).get_for_client("../escape")
    assert [item.data["purpose"] for item in drafts] == ["Contained"]

    assert store.get("../../outside") is None
    store.delete("../../outside")
    assert store.get(draft_uuid) is not None
