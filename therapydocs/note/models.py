from __future__ import annotations

"""
Live progress-note form model.

Design intent:
- One predicate decides whether a note has content; autosave and the
  unsaved-changes prompt both call it.
- Stored draft data is reconciled field by field against the model, so a
  stale or foreign key never rides along silently.
- Snapshots are plain JSON-compatible dicts compared by structural equality.
"""

import logging
from typing import Any, List, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)


class MSEEntry(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = ""
    note: str = ""
    disturbance: List[str] = Field(default_factory=list)
    disturbance_other: str = ""
    mood: List[str] = Field(default_factory=list)
    mood_other: str = ""
    perception: List[str] = Field(default_factory=list)
    perception_other: str = ""
    thought_content: List[str] = Field(default_factory=list)
    thought_content_other: str = ""
    thought_process: List[str] = Field(default_factory=list)
    thought_process_other: str = ""
    risk: List[str] = Field(default_factory=list)
    risk_other: str = ""
    risk_details: str = ""


class Intervention(BaseModel):
    model_config = ConfigDict(extra="forbid")

    label: str
    theme: str = ""
    description: str = ""
    notes: str = ""


_FREE_TEXT_FIELDS = (
    "purpose",
    "therapeutic_approaches_other",
    "response_to_interventions",
    "additional_notes",
    "future_notes",
    "narrative_format",
)
_MULTI_SELECT_FIELDS = ("therapeutic_approaches",)
_SUB_ENTRY_FIELDS = ("mse_entries", "interventions")


class Note(BaseModel):
    model_config = ConfigDict(extra="forbid")

    date: str = ""
    duration: int = 50
    purpose: str = ""
    mse_entries: List[MSEEntry] = Field(default_factory=list)
    therapeutic_approaches: List[str] = Field(default_factory=list)
    therapeutic_approaches_other: str = ""
    interventions: List[Intervention] = Field(default_factory=list)
    response_to_interventions: str = ""
    additional_notes: str = ""
    future_notes: str = ""
    include_future_notes: bool = True
    narrative_format: str = ""
    delivery: str = "In Person"
    delivery_other: str = ""
    client_location: str = "Office"
    client_location_other: str = ""

    def has_content(self) -> bool:
        if any(str(getattr(self, name) or "").strip() for name in _FREE_TEXT_FIELDS):
            return True
        if any(getattr(self, name) for name in _MULTI_SELECT_FIELDS):
            return True
        return any(getattr(self, name) for name in _SUB_ENTRY_FIELDS)

    def snapshot(self) -> dict[str, Any]:
        return self.model_dump(mode="json")

    def with_changes(self, changes: Mapping[str, Any]) -> "Note":
        unknown = sorted(set(changes) - set(Note.model_fields))
        if unknown:
            raise ValueError(f"Unknown note field(s): {unknown}")
        merged = self.snapshot()
        for key, value in changes.items():
            merged[key] = value
        return Note.model_validate(merged)

    @classmethod
    def reconcile(cls, data: Mapping[str, Any] | None) -> "Note":
        """
        Build a note from stored data, applying defaults field by field.

        Unknown keys are dropped with a warning. A known key whose value does
        not validate falls back to that field's default instead of rejecting
        the whole record.
        """
        raw = dict(data or {})
        unknown = sorted(key for key in raw if key not in cls.model_fields)
        if unknown:
            logger.warning("Dropping unknown note fields from stored data: %s", unknown)
        known = {key: value for key, value in raw.items() if key in cls.model_fields}
        try:
            return cls.model_validate(known)
        except ValidationError as exc:
            invalid = sorted({str(err["loc"][0]) for err in exc.errors() if err.get("loc")})
            logger.warning("Resetting invalid note fields to defaults: %s", invalid)
            for key in invalid:
                known.pop(key, None)
            return cls.model_validate(known)
