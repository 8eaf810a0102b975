from __future__ import annotations

"""
Run one narrative generation against the live note.

Design intent:
- Route every fragment through the streaming tag parser as it arrives.
- Stage narrative text on the job; write it into the note only on completion.
- A cancelled run is flushed and committed; a failed run commits nothing.
- Optional raw debug log mirrors the stage/meta format used by the log stats script.
"""

import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Literal, Mapping, Optional
from uuid import uuid4

from therapydocs.drafts.lifecycle import DraftLifecycleManager
from therapydocs.internal_core.audit import AuditTrail, log_event
from therapydocs.internal_core.contracts import Client, ClientContext
from therapydocs.internal_core.observable import Observable
from therapydocs.utils.dates import utc_now

from .assembly import NARRATIVE_SEPARATOR, NarrativeSettings, build_narrative_request, reconcile_settings
from .feeds import USER_CANCELLED, FeedHandle, GenerationFeed
from .stream_parser import StreamingTagParser

logger = logging.getLogger(__name__)

JobStatus = Literal["pending", "generating", "stopping", "completed", "stopped_partial", "failed"]
GenerationPhase = Literal["idle", "thinking", "narrative"]
SettingsProvider = Callable[[], Optional[Mapping[str, Any]]]

_ACTIVE_STATUSES = {"pending", "generating", "stopping"}


class GenerationInProgressError(RuntimeError):
    pass


class GenerationNotFoundError(KeyError):
    pass


@dataclass
class NarrativeJob:
    job_id: str
    client_id: Optional[str]
    draft_uuid: Optional[str]
    status: JobStatus = "pending"
    phase: GenerationPhase = "idle"
    stop_requested: bool = False
    reasoning: str = ""
    narrative: str = ""
    stop_reason: str = ""
    error: str = ""
    committed: bool = False
    created_at: str = ""
    updated_at: str = ""
    debug: dict[str, Any] = field(default_factory=dict)

    @property
    def active(self) -> bool:
        return self.status in _ACTIVE_STATUSES

    def snapshot(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "client_id": self.client_id,
            "draft_uuid": self.draft_uuid,
            "status": self.status,
            "phase": self.phase,
            "stop_requested": self.stop_requested,
            "reasoning": self.reasoning,
            "narrative": self.narrative,
            "stop_reason": self.stop_reason,
            "error": self.error,
            "committed": self.committed,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "debug": dict(self.debug),
        }


def _append_narrative_debug_log(
    path: str | None, *, stage: str, raw: str, metadata: dict[str, Any] | None = None
) -> None:
    if not path:
        return
    try:
        target = Path(path).expanduser()
        target.parent.mkdir(parents=True, exist_ok=True)
        stamp = utc_now().isoformat()
        meta = json.dumps(metadata or {}, ensure_ascii=True)
        payload = (
            f"[{stamp}] stage={stage} meta={meta}\n"
            "-----BEGIN NARRATIVE RAW-----\n"
            f"{raw}\n"
            "-----END NARRATIVE RAW-----\n"
        )
        with target.open("a", encoding="utf-8") as f:
            f.write(payload)
    except Exception:
        logger.debug("Narrative debug log write failed.", exc_info=True)


def merge_narrative(existing: str, generated: str) -> str:
    if not generated:
        return existing
    if existing.strip():
        return f"{existing}{NARRATIVE_SEPARATOR}{generated}"
    return generated


class NarrativeGenerator(Observable):
    def __init__(
        self,
        lifecycle: DraftLifecycleManager,
        feed: GenerationFeed,
        *,
        settings_provider: Optional[SettingsProvider] = None,
        debug_log_path: str = "",
        audit: Optional[AuditTrail] = None,
        runtime_id: str = "",
        clock: Optional[Callable[[], datetime]] = None,
    ):
        super().__init__()
        self._lifecycle = lifecycle
        self._feed = feed
        self._settings_provider = settings_provider
        self._debug_log_path = debug_log_path
        self._audit = audit
        self._runtime_id = runtime_id
        self._clock = clock or utc_now
        self._lock = threading.RLock()
        self._jobs: dict[str, NarrativeJob] = {}
        self._current: Optional[str] = None
        self._parser: Optional[StreamingTagParser] = None
        self._handle: Optional[FeedHandle] = None
        self._raw_parts: list[str] = []
        self._reasoning_parts: list[str] = []
        self._narrative_parts: list[str] = []
        self._started_at: Optional[datetime] = None

    @property
    def current_job(self) -> Optional[NarrativeJob]:
        with self._lock:
            return self._jobs.get(self._current) if self._current else None

    def get_job(self, job_id: str) -> NarrativeJob:
        with self._lock:
            job = self._jobs.get(job_id)
        if job is None:
            raise GenerationNotFoundError(f"Narrative job not found: {job_id}")
        return job

    def load_settings(self) -> NarrativeSettings:
        raw: Optional[Mapping[str, Any]] = None
        if self._settings_provider is not None:
            try:
                raw = self._settings_provider()
            except Exception as exc:
                logger.warning("Narrative settings unavailable, using defaults: %s", exc)
                raw = None
        return reconcile_settings(raw)

    def _now_iso(self) -> str:
        return self._clock().isoformat()

    def _finish_log(self, stage: str, raw: str, metadata: dict[str, Any]) -> int:
        started_at = self._started_at or self._clock()
        ended_at = self._clock()
        elapsed_ms = round((ended_at - started_at).total_seconds() * 1000.0, 2)
        _append_narrative_debug_log(
            self._debug_log_path,
            stage=stage,
            raw=raw,
            metadata={
                "started_at": started_at.isoformat(),
                "ended_at": ended_at.isoformat(),
                "elapsed_ms": elapsed_ms,
                **metadata,
            },
        )
        return int(elapsed_ms)

    def start(
        self,
        client: Optional[Client] = None,
        context: Optional[ClientContext] = None,
        approach_names: Optional[Mapping[str, str]] = None,
    ) -> NarrativeJob:
        with self._lock:
            current = self._jobs.get(self._current) if self._current else None
            if current is not None and current.active:
                raise GenerationInProgressError("A narrative generation is already running.")

        settings = self.load_settings()
        request = build_narrative_request(
            settings, self._lifecycle.note, client, context, approach_names
        )
        now_iso = self._now_iso()
        job = NarrativeJob(
            job_id=f"narrjob_{uuid4().hex[:12]}",
            client_id=self._lifecycle.client_id,
            draft_uuid=self._lifecycle.draft_uuid,
            status="generating",
            phase="thinking",
            created_at=now_iso,
            updated_at=now_iso,
            debug={
                "prompt_chars": len(request.prompt),
                "temperature": request.temperature,
                "max_tokens": request.max_tokens,
            },
        )
        with self._lock:
            self._jobs[job.job_id] = job
            self._current = job.job_id
            self._raw_parts = []
            self._reasoning_parts = []
            self._narrative_parts = []
            self._started_at = self._clock()
            self._parser = StreamingTagParser(
                on_reasoning=self._reasoning_parts.append,
                on_narrative=self._narrative_parts.append,
                prefill=request.prefill,
            )
            job.reasoning = "".join(self._reasoning_parts)

        _append_narrative_debug_log(
            self._debug_log_path,
            stage="narrative_generation_start",
            raw=request.prompt,
            metadata={
                "started_at": now_iso,
                "job_id": job.job_id,
                "temperature": request.temperature,
                "max_tokens": request.max_tokens,
            },
        )
        log_event(self._audit, self._runtime_id, "NARRATIVE_STARTED", "narrative_started")
        self._notify("generation_phase", "thinking")

        job_id = job.job_id
        handle = self._feed.start(
            request.prompt,
            request.params(),
            lambda text: self._on_chunk(job_id, text),
            lambda stop_reason: self._on_complete(job_id, stop_reason),
            lambda message: self._on_error(job_id, message),
        )
        with self._lock:
            if not job.active:
                return job
            self._handle = handle
            cancel_now = job.stop_requested
        if cancel_now:
            handle.cancel()
        return job

    def stop(self, job_id: Optional[str] = None) -> NarrativeJob:
        with self._lock:
            target_id = job_id or self._current
            job = self._jobs.get(target_id) if target_id else None
            if job is None:
                raise GenerationNotFoundError(f"Narrative job not found: {job_id}")
            handle = self._handle if target_id == self._current else None
            if job.active:
                job.stop_requested = True
                job.status = "stopping"
                job.updated_at = self._now_iso()
        if handle is not None and job.status == "stopping":
            handle.cancel()
        return job

    def _on_chunk(self, job_id: str, text: str) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            parser = self._parser
            if job is None or not job.active or job_id != self._current or parser is None:
                return
            previous_phase = job.phase
            self._raw_parts.append(text)
            parser.feed(text)
            job.phase = parser.phase
            job.reasoning = "".join(self._reasoning_parts)
            job.narrative = "".join(self._narrative_parts)
            job.updated_at = self._now_iso()
            phase = job.phase
        if phase != previous_phase:
            self._notify("generation_phase", phase)

    def _on_complete(self, job_id: str, stop_reason: str) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            parser = self._parser
            if job is None or not job.active or job_id != self._current or parser is None:
                return
            parser.flush()
            job.reasoning = "".join(self._reasoning_parts)
            job.narrative = "".join(self._narrative_parts).rstrip()
            job.stop_reason = stop_reason or "end_turn"
            cancelled = job.stop_reason == USER_CANCELLED or job.stop_requested
            job.status = "stopped_partial" if cancelled else "completed"
            job.phase = "idle"
            job.updated_at = self._now_iso()
            raw = "".join(self._raw_parts)
            self._parser = None
            self._handle = None

        job.committed = self._commit(job)
        duration_ms = self._finish_log(
            "narrative_generation_end",
            raw,
            {
                "status": "cancelled" if cancelled else "ok",
                "job_id": job.job_id,
                "stop_reason": job.stop_reason,
                "narrative_chars": len(job.narrative),
                "reasoning_chars": len(job.reasoning),
                "committed": job.committed,
            },
        )
        log_event(
            self._audit,
            self._runtime_id,
            "NARRATIVE_FINISHED",
            "narrative_cancelled" if cancelled else "narrative_completed",
            f"stop_reason={job.stop_reason}",
            duration_ms=duration_ms,
        )
        self._notify("generation_phase", "idle")

    def _on_error(self, job_id: str, message: str) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or not job.active or job_id != self._current:
                return
            # Parser is torn down without a flush; staged narrative is dropped.
            self._parser = None
            self._handle = None
            job.status = "failed"
            job.phase = "idle"
            job.narrative = ""
            job.error = message or "Narrative generation failed."
            job.updated_at = self._now_iso()
            raw = "".join(self._raw_parts)

        duration_ms = self._finish_log(
            "narrative_generation_end",
            raw,
            {"status": "generation_error", "job_id": job.job_id, "error": job.error},
        )
        log_event(
            self._audit,
            self._runtime_id,
            "NARRATIVE_FAILED",
            "narrative_error",
            job.error,
            duration_ms=duration_ms,
        )
        self._notify("generation_phase", "idle")

    def _commit(self, job: NarrativeJob) -> bool:
        if not job.narrative.strip():
            return False
        if (
            self._lifecycle.client_id != job.client_id
            or self._lifecycle.draft_uuid != job.draft_uuid
        ):
            logger.warning("Narrative job %s finished after its note was closed; not committed.", job.job_id)
            return False
        existing = self._lifecycle.note.narrative_format
        self._lifecycle.update_note({"narrative_format": merge_narrative(existing, job.narrative)})
        return True
