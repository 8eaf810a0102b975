from __future__ import annotations

"""
Sources of streamed narrative text.

Design intent:
- Every feed delivers fragments in order from a single worker and ends with
  exactly one terminal callback (`on_complete` or `on_error`).
- Cancelling a feed closes its open transport and ends it through
  `on_complete("user_cancelled")`.
- Backends: scripted text for mock mode, a local llama.cpp model, or an HTTP
  endpoint speaking server-sent events.
"""

import json
import logging
import re
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Iterator, Mapping, Optional, Protocol

import httpx

from therapydocs.internal_core.config import AppConfig

logger = logging.getLogger(__name__)

ChunkSink = Callable[[str], None]
CompleteSink = Callable[[str], None]
ErrorSink = Callable[[str], None]
Spawn = Callable[[Callable[[], None]], None]

USER_CANCELLED = "user_cancelled"

DEFAULT_MOCK_RESPONSE = (
    " mock generation used while the narrative backend is disabled. The session data"
    " describes an individual client; the narrative should stay short and use"
    " clinical abbreviations.\n</thinking>\n<narrative>\n"
    "Clt presented in office for a scheduled session. Th reviewed progress since the"
    " last visit and practiced a grounding exercise with clt. Clt engaged with the"
    " exercise and identified one situation to apply it this week.\n</narrative>"
)

_TOKEN_SPLIT_RE = re.compile(r"(\s+)")


class NarrativeFeedError(RuntimeError):
    pass


class FeedHandle(Protocol):
    def cancel(self) -> None: ...


class GenerationFeed(Protocol):
    def start(
        self,
        prompt: str,
        params: Mapping[str, Any],
        on_chunk: ChunkSink,
        on_complete: CompleteSink,
        on_error: ErrorSink,
    ) -> FeedHandle: ...


def thread_spawn(target: Callable[[], None]) -> None:
    worker = threading.Thread(target=target, daemon=True)
    worker.start()


class _CancelHandle:
    """Cancellation flag plus closers that abort whatever the worker is blocked on."""

    def __init__(self) -> None:
        self.cancelled = threading.Event()
        self._closers: list[Callable[[], None]] = []
        self._lock = threading.Lock()

    def on_cancel(self, closer: Callable[[], None]) -> None:
        with self._lock:
            if not self.cancelled.is_set():
                self._closers.append(closer)
                return
        self._close(closer)

    def cancel(self) -> None:
        with self._lock:
            self.cancelled.set()
            closers, self._closers = self._closers, []
        for closer in closers:
            self._close(closer)

    @staticmethod
    def _close(closer: Callable[[], None]) -> None:
        try:
            closer()
        except Exception as exc:
            logger.warning("Narrative feed close on cancel failed: %s", exc)


class _ThreadedFeed(ABC):
    """Run `_produce` on a worker and translate its outcome into one terminal callback."""

    def __init__(self, spawn: Optional[Spawn] = None):
        self._spawn: Spawn = spawn or thread_spawn

    @abstractmethod
    def _produce(
        self,
        prompt: str,
        params: Mapping[str, Any],
        handle: _CancelHandle,
        on_chunk: ChunkSink,
    ) -> str: ...

    def start(
        self,
        prompt: str,
        params: Mapping[str, Any],
        on_chunk: ChunkSink,
        on_complete: CompleteSink,
        on_error: ErrorSink,
    ) -> FeedHandle:
        handle = _CancelHandle()

        def run() -> None:
            try:
                stop_reason = self._produce(prompt, dict(params), handle, on_chunk)
            except Exception as exc:
                if handle.cancelled.is_set():
                    on_complete(USER_CANCELLED)
                    return
                logger.warning("Narrative feed failed: %s", exc)
                on_error(str(exc) or exc.__class__.__name__)
                return
            on_complete(USER_CANCELLED if handle.cancelled.is_set() else stop_reason)

        self._spawn(run)
        return handle


def split_mock_tokens(text: str) -> list[str]:
    """Split on whitespace, keeping the separators as their own tokens."""
    return [part for part in _TOKEN_SPLIT_RE.split(text or "") if part]


class ScriptedNarrativeFeed(_ThreadedFeed):
    def __init__(
        self,
        text: str = DEFAULT_MOCK_RESPONSE,
        *,
        delay_seconds: float = 0.02,
        spawn: Optional[Spawn] = None,
        sleep: Callable[[float], None] = time.sleep,
        fail_with: str = "",
    ):
        super().__init__(spawn)
        self._text = text
        self._delay = max(0.0, float(delay_seconds))
        self._sleep = sleep
        self._fail_with = fail_with

    def _produce(
        self,
        prompt: str,
        params: Mapping[str, Any],
        handle: _CancelHandle,
        on_chunk: ChunkSink,
    ) -> str:
        for token in split_mock_tokens(self._text):
            if handle.cancelled.is_set():
                return USER_CANCELLED
            on_chunk(token)
            if self._delay:
                self._sleep(self._delay)
        if self._fail_with:
            raise NarrativeFeedError(self._fail_with)
        return "end_turn"


class SseEventDecoder:
    """Incrementally decode `data: {...}` frames separated by a blank line."""

    def __init__(self) -> None:
        self._buffer = ""

    def feed(self, text: str) -> list[dict[str, Any]]:
        self._buffer += (text or "").replace("\r\n", "\n")
        events: list[dict[str, Any]] = []
        while "\n\n" in self._buffer:
            frame, self._buffer = self._buffer.split("\n\n", 1)
            event = self._decode_frame(frame)
            if event is not None:
                events.append(event)
        return events

    def close(self) -> list[dict[str, Any]]:
        remainder, self._buffer = self._buffer, ""
        event = self._decode_frame(remainder)
        return [event] if event is not None else []

    @staticmethod
    def _decode_frame(frame: str) -> Optional[dict[str, Any]]:
        data_lines = [
            line[5:].lstrip() for line in frame.split("\n") if line.startswith("data:")
        ]
        if not data_lines:
            return None
        data = "\n".join(data_lines).strip()
        if not data or data == "[DONE]":
            return None
        try:
            parsed = json.loads(data)
        except json.JSONDecodeError:
            logger.warning("Skipping malformed narrative event (len=%d).", len(data))
            return None
        return parsed if isinstance(parsed, dict) else None


class HttpNarrativeFeed(_ThreadedFeed):
    def __init__(
        self,
        endpoint: str,
        *,
        timeout_seconds: float = 120.0,
        client_factory: Optional[Callable[[], httpx.Client]] = None,
        spawn: Optional[Spawn] = None,
    ):
        super().__init__(spawn)
        if not str(endpoint or "").strip():
            raise NarrativeFeedError("Narrative endpoint is not configured.")
        self._endpoint = endpoint.strip()
        self._timeout = float(timeout_seconds)
        self._client_factory = client_factory or (lambda: httpx.Client(timeout=self._timeout))

    def _produce(
        self,
        prompt: str,
        params: Mapping[str, Any],
        handle: _CancelHandle,
        on_chunk: ChunkSink,
    ) -> str:
        body = {
            "prompt": prompt,
            "system_prompt": params.get("system_prompt", ""),
            "temperature": params.get("temperature"),
            "max_tokens": params.get("max_tokens"),
            "prefill": params.get("prefill", ""),
            "model": params.get("model_id", ""),
        }
        decoder = SseEventDecoder()
        try:
            with self._client_factory() as client:
                with client.stream(
                    "POST",
                    self._endpoint,
                    json=body,
                    headers={"Accept": "text/event-stream"},
                ) as response:
                    handle.on_cancel(response.close)
                    if response.status_code >= 400:
                        response.read()
                        raise NarrativeFeedError(
                            f"Narrative endpoint returned HTTP {response.status_code}."
                        )
                    for text in response.iter_text():
                        if handle.cancelled.is_set():
                            return USER_CANCELLED
                        for event in decoder.feed(text):
                            stop_reason = self._dispatch(event, on_chunk)
                            if stop_reason:
                                return stop_reason
                    for event in decoder.close():
                        stop_reason = self._dispatch(event, on_chunk)
                        if stop_reason:
                            return stop_reason
        except httpx.HTTPError as exc:
            raise NarrativeFeedError(f"Narrative request failed: {exc}") from exc
        return "end_turn"

    @staticmethod
    def _dispatch(event: Mapping[str, Any], on_chunk: ChunkSink) -> str:
        if event.get("error"):
            raise NarrativeFeedError(str(event["error"]))
        text = event.get("text")
        if isinstance(text, str) and text:
            on_chunk(text)
        if event.get("done"):
            return str(event.get("stopReason") or "end_turn")
        return ""


class LlamaCppNarrativeFeed(_ThreadedFeed):
    def __init__(
        self,
        model_path: str,
        *,
        chat_format: str = "gemma",
        n_ctx: int = 8192,
        n_gpu_layers: int = -1,
        n_threads: Optional[int] = None,
        spawn: Optional[Spawn] = None,
    ):
        super().__init__(spawn)
        self._model_path = model_path
        self._chat_format = chat_format
        self._n_ctx = int(n_ctx)
        self._n_gpu_layers = int(n_gpu_layers)
        self._n_threads = n_threads
        self._llm: Any = None
        self._load_lock = threading.Lock()

    def _load(self) -> Any:
        with self._load_lock:
            if self._llm is not None:
                return self._llm
            if not self._model_path:
                raise NarrativeFeedError(
                    "Narrative model path is missing. Set THERAPYDOCS_NARRATIVE_MODEL_PATH "
                    "or place a GGUF under the local model defaults."
                )
            try:
                from llama_cpp import Llama  # type: ignore
            except Exception as exc:
                raise NarrativeFeedError(f"llama_cpp import failed: {exc}") from exc

            llm_kwargs: dict[str, Any] = {
                "model_path": self._model_path,
                "n_ctx": self._n_ctx,
                "n_gpu_layers": self._n_gpu_layers,
                "verbose": False,
                "chat_format": self._chat_format,
            }
            if self._n_threads is not None:
                llm_kwargs["n_threads"] = self._n_threads
            try:
                self._llm = Llama(**llm_kwargs)
            except TypeError as exc:
                if "chat_format" not in str(exc):
                    raise
                llm_kwargs.pop("chat_format", None)
                self._llm = Llama(**llm_kwargs)
            return self._llm

    @staticmethod
    def build_raw_prompt(prompt: str, params: Mapping[str, Any]) -> str:
        system_prompt = str(params.get("system_prompt", "") or "").strip()
        user_turn = f"{system_prompt}\n\n{prompt}" if system_prompt else prompt
        return (
            "<start_of_turn>user\n"
            f"{user_turn}<end_of_turn>\n"
            "<start_of_turn>model\n"
            f"{params.get('prefill', '') or ''}"
        )

    def _produce(
        self,
        prompt: str,
        params: Mapping[str, Any],
        handle: _CancelHandle,
        on_chunk: ChunkSink,
    ) -> str:
        llm = self._load()
        stream: Iterator[dict[str, Any]] = llm.create_completion(
            prompt=self.build_raw_prompt(prompt, params),
            temperature=float(params.get("temperature", 0.5)),
            top_p=1.0,
            max_tokens=int(params.get("max_tokens", 2048)),
            stop=["<end_of_turn>", "</s>"],
            stream=True,
        )
        finish_reason = ""
        for chunk in stream:
            if handle.cancelled.is_set():
                return USER_CANCELLED
            choice = (chunk.get("choices") or [{}])[0]
            text = str(choice.get("text") or "")
            if text:
                on_chunk(text)
            finish_reason = str(choice.get("finish_reason") or finish_reason)
        return "max_tokens" if finish_reason == "length" else "end_turn"


def build_feed(config: AppConfig, *, spawn: Optional[Spawn] = None) -> GenerationFeed:
    backend = config.THERAPYDOCS_NARRATIVE_BACKEND
    if backend == "mock":
        return ScriptedNarrativeFeed(
            delay_seconds=config.THERAPYDOCS_MOCK_STREAM_DELAY_SECONDS,
            spawn=spawn,
        )
    if backend == "http":
        return HttpNarrativeFeed(
            config.THERAPYDOCS_NARRATIVE_ENDPOINT,
            timeout_seconds=config.THERAPYDOCS_NARRATIVE_TIMEOUT_SECONDS,
            spawn=spawn,
        )
    if backend == "llama_cpp":
        return LlamaCppNarrativeFeed(
            config.THERAPYDOCS_NARRATIVE_MODEL_PATH,
            chat_format=config.THERAPYDOCS_NARRATIVE_CHAT_FORMAT,
            n_ctx=config.THERAPYDOCS_NARRATIVE_N_CTX,
            n_gpu_layers=config.THERAPYDOCS_NARRATIVE_N_GPU_LAYERS,
            n_threads=config.THERAPYDOCS_NARRATIVE_N_THREADS,
            spawn=spawn,
        )
    raise NarrativeFeedError(f"Unsupported narrative backend: {backend}")
