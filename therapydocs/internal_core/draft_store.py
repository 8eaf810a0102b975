from __future__ import annotations

"""
Local draft persistence keyed by a per-authoring-session uuid.

Design intent:
- Keep one record per uuid plus a per-client index of uuids.
- Self-heal the index when a draft record has gone missing.
- Deep-copy note data on the way in and out so callers never share state.
"""

import copy
import json
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from pathlib import Path
from threading import RLock
from typing import Any, Callable, Dict, List, Optional, Protocol
from urllib.parse import quote, unquote

from therapydocs.utils.dates import hours_since, parse_timestamp, utc_now

from .contracts import Draft

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class DraftStore(Protocol):
    def initialize(self, client_id: str, form_type: str, session_date: str) -> str: ...

    def get(self, draft_uuid: str) -> Optional[Draft]: ...

    def save(self, draft_uuid: str, data: Dict[str, Any]) -> bool: ...

    def update_session_date(self, draft_uuid: str, session_date: str) -> bool: ...

    def mark_saved_to_backend(self, draft_uuid: str) -> bool: ...

    def delete(self, draft_uuid: str) -> None: ...

    def get_for_client(self, client_id: str) -> List[Draft]: ...

    def get_for_date(self, client_id: str, session_date: str) -> List[Draft]: ...

    def find_orphaned(self, client_id: str, hours_threshold: float) -> List[Draft]: ...

    def cleanup_old_saved(self, days: int = 7) -> int: ...


class _IndexedDraftStore(ABC):
    """Draft operations shared by every backend; subclasses supply raw record IO."""

    def __init__(self, clock: Optional[Clock] = None):
        self._clock: Clock = clock or utc_now
        self._lock = RLock()

    @abstractmethod
    def _read(self, draft_uuid: str) -> Optional[Draft]: ...

    @abstractmethod
    def _write(self, draft: Draft) -> None: ...

    @abstractmethod
    def _remove(self, draft_uuid: str) -> None: ...

    @abstractmethod
    def _read_index(self, client_id: str) -> List[str]: ...

    @abstractmethod
    def _write_index(self, client_id: str, uuids: List[str]) -> None: ...

    @abstractmethod
    def _all_uuids(self) -> List[str]: ...

    def _now_iso(self) -> str:
        return self._clock().isoformat()

    def initialize(self, client_id: str, form_type: str, session_date: str) -> str:
        draft_uuid = uuid.uuid4().hex
        draft = Draft(
            uuid=draft_uuid,
            client_id=client_id,
            form_type=form_type,
            session_date=session_date,
            data={},
            saved_at=self._now_iso(),
            saved_to_backend=False,
        )
        with self._lock:
            self._write(draft)
            index = self._read_index(client_id)
            if draft_uuid not in index:
                index.append(draft_uuid)
                self._write_index(client_id, index)
        return draft_uuid

    def get(self, draft_uuid: str) -> Optional[Draft]:
        with self._lock:
            draft = self._read(draft_uuid)
        return draft.model_copy(deep=True) if draft is not None else None

    def save(self, draft_uuid: str, data: Dict[str, Any]) -> bool:
        with self._lock:
            draft = self._read(draft_uuid)
            if draft is None:
                logger.warning("Draft not found for save: %s", draft_uuid)
                return False
            self._write(
                draft.model_copy(update={"data": copy.deepcopy(dict(data)), "saved_at": self._now_iso()})
            )
        return True

    def update_session_date(self, draft_uuid: str, session_date: str) -> bool:
        with self._lock:
            draft = self._read(draft_uuid)
            if draft is None:
                return False
            self._write(draft.model_copy(update={"session_date": session_date}))
        return True

    def mark_saved_to_backend(self, draft_uuid: str) -> bool:
        with self._lock:
            draft = self._read(draft_uuid)
            if draft is None:
                return False
            self._write(draft.model_copy(update={"saved_to_backend": True}))
        return True

    def delete(self, draft_uuid: str) -> None:
        with self._lock:
            draft = self._read(draft_uuid)
            self._remove(draft_uuid)
            if draft is None:
                return
            index = [item for item in self._read_index(draft.client_id) if item != draft_uuid]
            self._write_index(draft.client_id, index)

    def get_for_client(self, client_id: str) -> List[Draft]:
        with self._lock:
            index = self._read_index(client_id)
            drafts: List[Draft] = []
            valid: List[str] = []
            for draft_uuid in index:
                draft = self._read(draft_uuid)
                if draft is None:
                    continue
                drafts.append(draft.model_copy(deep=True))
                valid.append(draft_uuid)
            if len(valid) != len(index):
                logger.info(
                    "Healed draft index for client=%s (dropped=%d)", client_id, len(index) - len(valid)
                )
                self._write_index(client_id, valid)
        drafts.sort(key=lambda item: parse_timestamp(item.saved_at), reverse=True)
        return drafts

    def get_for_date(self, client_id: str, session_date: str) -> List[Draft]:
        return [item for item in self.get_for_client(client_id) if item.session_date == session_date]

    def find_orphaned(self, client_id: str, hours_threshold: float) -> List[Draft]:
        now = self._clock()
        orphaned: List[Draft] = []
        for item in self.get_for_client(client_id):
            age = hours_since(item.saved_at, now)
            if not item.saved_to_backend and age is not None and age > hours_threshold:
                orphaned.append(item)
        return orphaned

    def cleanup_old_saved(self, days: int = 7) -> int:
        cutoff = self._clock() - timedelta(days=days)
        removed = 0
        with self._lock:
            for draft_uuid in self._all_uuids():
                draft = self._read(draft_uuid)
                if draft is None or not draft.saved_to_backend:
                    continue
                if parse_timestamp(draft.saved_at) < cutoff:
                    self.delete(draft_uuid)
                    removed += 1
        if removed:
            logger.info("Removed %d backend-saved drafts older than %d days", removed, days)
        return removed


class InMemoryDraftStore(_IndexedDraftStore):
    def __init__(self, clock: Optional[Clock] = None):
        super().__init__(clock=clock)
        self._drafts: Dict[str, Draft] = {}
        self._indexes: Dict[str, List[str]] = {}

    def _read(self, draft_uuid: str) -> Optional[Draft]:
        return self._drafts.get(draft_uuid)

    def _write(self, draft: Draft) -> None:
        self._drafts[draft.uuid] = draft.model_copy(deep=True)

    def _remove(self, draft_uuid: str) -> None:
        self._drafts.pop(draft_uuid, None)

    def _read_index(self, client_id: str) -> List[str]:
        return list(self._indexes.get(client_id, []))

    def _write_index(self, client_id: str, uuids: List[str]) -> None:
        self._indexes[client_id] = list(uuids)

    def _all_uuids(self) -> List[str]:
        return list(self._drafts.keys())


def _file_token(value: str) -> str:
    # Encoded ids never contain a path separator.
    return quote(str(value), safe="")


class JsonDirectoryDraftStore(_IndexedDraftStore):
    """One `draft_<uuid>.json` per draft plus `index_<client_id>.json` per client."""

    def __init__(self, root: Path, clock: Optional[Clock] = None):
        super().__init__(clock=clock)
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)

    def _draft_path(self, draft_uuid: str) -> Path:
        return self._root / f"draft_{_file_token(draft_uuid)}.json"

    def _index_path(self, client_id: str) -> Path:
        return self._root / f"index_{_file_token(client_id)}.json"

    def _read(self, draft_uuid: str) -> Optional[Draft]:
        path = self._draft_path(draft_uuid)
        if not path.exists():
            return None
        try:
            return Draft.model_validate(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, ValueError) as exc:
            logger.warning("Unreadable draft record %s: %s", path.name, exc)
            return None

    def _write(self, draft: Draft) -> None:
        path = self._draft_path(draft.uuid)
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(json.dumps(draft.model_dump(mode="json"), ensure_ascii=True), encoding="utf-8")
        tmp_path.replace(path)

    def _remove(self, draft_uuid: str) -> None:
        self._draft_path(draft_uuid).unlink(missing_ok=True)

    def _read_index(self, client_id: str) -> List[str]:
        path = self._index_path(client_id)
        if not path.exists():
            return []
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Unreadable draft index %s: %s", path.name, exc)
            return []
        return [str(item) for item in raw] if isinstance(raw, list) else []

    def _write_index(self, client_id: str, uuids: List[str]) -> None:
        self._index_path(client_id).write_text(json.dumps(list(uuids)), encoding="utf-8")

    def _all_uuids(self) -> List[str]:
        return sorted(unquote(path.stem[len("draft_"):]) for path in self._root.glob("draft_*.json"))
