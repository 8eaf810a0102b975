from __future__ import annotations

"""
Flag session dates that look like duplicate or misplaced documentation.

Design intent:
- Pure function of client, date, documents and drafts; no store access.
- Checks 1-3 are critical (blocking); cadence and orphan checks are informational.
- Same-date repetition is only abnormal for some document types (not diagnosis).
"""

from datetime import datetime
from typing import Iterable, Optional

from therapydocs.internal_core.contracts import (
    Client,
    Document,
    Draft,
    DuplicateWarnings,
    document_type_for_form,
)
from therapydocs.utils.dates import days_between, hours_since, parse_day, utc_now

WARN_ON_DUPLICATE_DATE = frozenset(
    {"progress_note", "intake", "treatment_plan", "consultation", "discharge"}
)

# 50% of the expected interval between sessions.
CADENCE_MIN_GAP_DAYS = {"weekly": 3.5, "biweekly": 7.0}

DEFAULT_ORPHAN_THRESHOLD_HOURS = 24


def min_gap_days_for_basis(session_basis: Optional[str]) -> Optional[float]:
    return CADENCE_MIN_GAP_DAYS.get(str(session_basis or ""))


def _older_than(saved_at: str, threshold_hours: float, now: datetime) -> bool:
    age = hours_since(saved_at, now)
    return age is not None and age > threshold_hours


def detect_duplicates(
    *,
    client: Optional[Client],
    session_date: str,
    form_type: str,
    documents: Iterable[Document],
    drafts: Iterable[Draft],
    active_draft_uuid: Optional[str] = None,
    last_session_date: Optional[str] = None,
    exclude_document_id: Optional[str] = None,
    orphan_threshold_hours: float = DEFAULT_ORPHAN_THRESHOLD_HOURS,
    now: Optional[datetime] = None,
) -> DuplicateWarnings:
    if client is None or not str(session_date or "").strip():
        return DuplicateWarnings()

    now = now or utc_now()
    document_type = document_type_for_form(form_type)
    client_drafts = [item for item in drafts if item.client_id == client.id]

    has_backend_document = False
    if document_type in WARN_ON_DUPLICATE_DATE:
        has_backend_document = any(
            doc.document_type == document_type
            and doc.date == session_date
            and not (exclude_document_id and exclude_document_id in {doc.id, doc.amendment_of})
            for doc in documents
        )

    has_other_draft = any(
        item.session_date == session_date
        and item.form_type == form_type
        and item.uuid != active_draft_uuid
        for item in client_drafts
    )

    # Date checks only apply to dates that parse; a half-typed date skips them.
    predates_client = False
    session_day = parse_day(session_date)
    created_day = parse_day(client.created_at) if client.created_at else None
    if session_day is not None and created_day is not None:
        predates_client = session_day < created_day

    too_soon_for_basis = False
    gap_days: Optional[int] = None
    if last_session_date:
        gap_days = days_between(last_session_date, session_date)
    min_gap = min_gap_days_for_basis(client.session_basis)
    if min_gap is not None and gap_days is not None and last_session_date != session_date:
        too_soon_for_basis = gap_days < min_gap

    orphaned = [
        item
        for item in client_drafts
        if item.uuid != active_draft_uuid
        and not item.saved_to_backend
        and _older_than(item.saved_at, orphan_threshold_hours, now)
    ]

    return DuplicateWarnings(
        has_backend_document=has_backend_document,
        has_other_draft=has_other_draft,
        predates_client=predates_client,
        too_soon_for_basis=too_soon_for_basis,
        days_since_last_session=gap_days,
        orphaned_drafts=orphaned,
    )
