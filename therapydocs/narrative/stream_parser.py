from __future__ import annotations

"""
Split a streamed narrative generation into reasoning and narrative channels.

Design intent:
- Accept fragments of any size, including fragments that cut a marker in half.
- Hold back only as much of the buffer as the watched marker could still occupy.
- Keep the parser phase as one explicit state object instead of loose flags.
- Never raise on malformed model output; always end with some partition.
"""

import logging
import re
import threading
from dataclasses import dataclass
from typing import Callable, Iterable, Literal, Union

logger = logging.getLogger(__name__)

THINKING_CLOSE = "</thinking>"
NARRATIVE_OPEN = "<narrative>"
NARRATIVE_CLOSE = "</narrative>"

_PREFILL_OPEN_RE = re.compile(r"^<thinking>\s*", flags=re.IGNORECASE)
_THINKING_CLOSE_RE = re.compile(re.escape(THINKING_CLOSE), flags=re.IGNORECASE)
_NARRATIVE_OPEN_RE = re.compile(r"^\s*<narrative>\s*", flags=re.IGNORECASE)
_NARRATIVE_CLOSE_RE = re.compile(re.escape(NARRATIVE_CLOSE), flags=re.IGNORECASE)
_THINKING_BLOCK_RE = re.compile(r"<thinking>([\s\S]*?)</thinking>", flags=re.IGNORECASE)
_NARRATIVE_BLOCK_RE = re.compile(r"<narrative>([\s\S]*?)</narrative>", flags=re.IGNORECASE)

StreamPhase = Literal["thinking", "narrative"]
TextSink = Callable[[str], None]


class ParserReentryError(RuntimeError):
    """Raised when a fragment arrives while another is still being processed."""


@dataclass
class Thinking:
    buffer: str = ""


@dataclass
class AwaitingNarrativeOpen:
    buffer: str = ""


@dataclass
class Narrative:
    buffer: str = ""
    emitted: bool = False


@dataclass(frozen=True)
class NarrativeClosed:
    pass


@dataclass(frozen=True)
class Finished:
    phase: StreamPhase


ParserState = Union[Thinking, AwaitingNarrativeOpen, Narrative, NarrativeClosed, Finished]


class StreamingTagParser:
    def __init__(
        self,
        *,
        on_reasoning: TextSink,
        on_narrative: TextSink,
        prefill: str = "",
    ) -> None:
        self._on_reasoning = on_reasoning
        self._on_narrative = on_narrative
        self._guard = threading.Lock()
        self._state: ParserState = Thinking()
        self.fragments_seen = 0

        prefill_text = _PREFILL_OPEN_RE.sub("", prefill or "", count=1)
        if prefill_text:
            self._on_reasoning(prefill_text)

    @property
    def state(self) -> ParserState:
        return self._state

    @property
    def phase(self) -> StreamPhase:
        state = self._state
        if isinstance(state, Thinking):
            return "thinking"
        if isinstance(state, Finished):
            return state.phase
        return "narrative"

    @property
    def finished(self) -> bool:
        return isinstance(self._state, Finished)

    def feed(self, fragment: str) -> None:
        if not self._guard.acquire(blocking=False):
            raise ParserReentryError("Parser received a fragment while processing another one.")
        try:
            if not fragment:
                return
            self.fragments_seen += 1
            state = self._state
            if isinstance(state, Finished):
                logger.debug("Ignoring fragment after flush (len=%d).", len(fragment))
                return
            if isinstance(state, NarrativeClosed):
                if fragment.strip():
                    logger.debug("Dropping text after closing narrative marker (len=%d).", len(fragment))
                return
            if isinstance(state, Thinking):
                state.buffer += fragment
                self._advance_thinking(state)
            elif isinstance(state, AwaitingNarrativeOpen):
                state.buffer += fragment
                self._advance_awaiting(state)
            else:
                state.buffer += fragment
                self._advance_narrative(state)
        finally:
            self._guard.release()

    def flush(self) -> None:
        if not self._guard.acquire(blocking=False):
            raise ParserReentryError("Parser flush called while a fragment is being processed.")
        try:
            state = self._state
            if isinstance(state, Finished):
                return
            if isinstance(state, Thinking):
                # Closing marker never seen mid-stream: scan the whole remainder once.
                match = _THINKING_CLOSE_RE.search(state.buffer)
                if match is None:
                    if state.buffer:
                        self._on_reasoning(state.buffer)
                    self._state = Finished(phase="thinking")
                    return
                if match.start() > 0:
                    self._on_reasoning(state.buffer[: match.start()])
                self._finish_narrative(state.buffer[match.end():], strip_open=True, emitted=False)
            elif isinstance(state, AwaitingNarrativeOpen):
                self._finish_narrative(state.buffer, strip_open=True, emitted=False)
            elif isinstance(state, Narrative):
                self._finish_narrative(state.buffer, strip_open=False, emitted=state.emitted)
            self._state = Finished(phase="narrative")
        finally:
            self._guard.release()

    def _advance_thinking(self, state: Thinking) -> None:
        match = _THINKING_CLOSE_RE.search(state.buffer)
        if match is None:
            safe_len = len(state.buffer) - (len(THINKING_CLOSE) - 1)
            if safe_len > 0:
                self._on_reasoning(state.buffer[:safe_len])
                state.buffer = state.buffer[safe_len:]
            return
        if match.start() > 0:
            self._on_reasoning(state.buffer[: match.start()])
        awaiting = AwaitingNarrativeOpen(buffer=state.buffer[match.end():])
        self._state = awaiting
        self._advance_awaiting(awaiting)

    def _advance_awaiting(self, state: AwaitingNarrativeOpen) -> None:
        match = _NARRATIVE_OPEN_RE.match(state.buffer)
        if match is not None:
            resolved = state.buffer[match.end():]
        else:
            trimmed = state.buffer.lstrip()
            if trimmed and not trimmed.startswith("<"):
                resolved = trimmed
            elif len(trimmed) < len(NARRATIVE_OPEN):
                # Could still be a split opening marker.
                return
            else:
                # Starts with "<" but is not the opening marker.
                resolved = state.buffer
        narrative = Narrative(buffer=resolved)
        self._state = narrative
        self._advance_narrative(narrative)

    def _advance_narrative(self, state: Narrative) -> None:
        match = _NARRATIVE_CLOSE_RE.search(state.buffer)
        if match is not None:
            self._emit_narrative(state, state.buffer[: match.start()])
            trailing = state.buffer[match.end():]
            if trailing.strip():
                logger.debug("Dropping text after closing narrative marker (len=%d).", len(trailing))
            self._state = NarrativeClosed()
            return
        safe_len = len(state.buffer) - (len(NARRATIVE_CLOSE) - 1)
        if safe_len > 0:
            text = state.buffer[:safe_len]
            state.buffer = state.buffer[safe_len:]
            self._emit_narrative(state, text)

    def _emit_narrative(self, state: Narrative, text: str) -> None:
        if not state.emitted:
            text = text.lstrip()
        if not text:
            return
        state.emitted = True
        self._on_narrative(text)

    def _finish_narrative(self, buffer: str, *, strip_open: bool, emitted: bool) -> None:
        if strip_open:
            buffer = _NARRATIVE_OPEN_RE.sub("", buffer, count=1)
        match = _NARRATIVE_CLOSE_RE.search(buffer)
        if match is not None:
            buffer = buffer[: match.start()]
        if not emitted:
            buffer = buffer.lstrip()
        if buffer:
            self._on_narrative(buffer)


def demultiplex(fragments: Iterable[str], *, prefill: str = "") -> tuple[str, str]:
    """Run a full stream through a fresh parser and return (reasoning, narrative)."""
    reasoning: list[str] = []
    narrative: list[str] = []
    parser = StreamingTagParser(
        on_reasoning=reasoning.append,
        on_narrative=narrative.append,
        prefill=prefill,
    )
    for fragment in fragments:
        parser.feed(fragment)
    parser.flush()
    return "".join(reasoning), "".join(narrative)


def split_reasoning_and_narrative(response: str) -> tuple[str, str]:
    """
    Partition a complete (non-streamed) response.

    Both blocks present: each is extracted. Only a reasoning block: the rest is
    narrative. Only a narrative block: the rest is reasoning. No blocks: the
    whole response is narrative.
    """
    if not response:
        return "", ""
    thinking_match = _THINKING_BLOCK_RE.search(response)
    narrative_match = _NARRATIVE_BLOCK_RE.search(response)
    if thinking_match and narrative_match:
        return thinking_match.group(1).strip(), narrative_match.group(1).strip()
    if thinking_match:
        return thinking_match.group(1).strip(), _THINKING_BLOCK_RE.sub("", response).strip()
    if narrative_match:
        return _NARRATIVE_BLOCK_RE.sub("", response).strip(), narrative_match.group(1).strip()
    return "", response.strip()
