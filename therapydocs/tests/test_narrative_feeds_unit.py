import json
import threading
from typing import Any, Callable, Iterator

import httpx
import pytest

from therapydocs.internal_core.config import load_config
from therapydocs.narrative.feeds import (
    USER_CANCELLED,
    HttpNarrativeFeed,
    LlamaCppNarrativeFeed,
    NarrativeFeedError,
    ScriptedNarrativeFeed,
    SseEventDecoder,
    _ThreadedFeed,
    build_feed,
    split_mock_tokens,
)


def _run_inline(target: Callable[[], None]) -> None:
    target()


class _Recorder:
    def __init__(self) -> None:
        self.chunks: list[str] = []
        self.completed: list[str] = []
        self.errors: list[str] = []

    def sinks(self) -> tuple[Callable[[str], None], Callable[[str], None], Callable[[str], None]]:
        return self.chunks.append, self.completed.append, self.errors.append


def test_split_mock_tokens_keeps_separators() -> None:
    assert split_mock_tokens("Clt  engaged\nwell") == ["Clt", "  ", "engaged", "\n", "well"]
    assert "".join(split_mock_tokens(" a b ")) == " a b "


def test_sse_decoder_handles_frames_split_across_reads() -> None:
    decoder = SseEventDecoder()
    assert decoder.feed('data: {"text": "He') == []
    assert decoder.feed('llo"}\n\ndata: {"done": true, "stopReason": "end_turn"}\n') == [{"text": "Hello"}]
    assert decoder.feed("\n: keepalive\n\ndata: [DONE]\n\n") == [{"done": True, "stopReason": "end_turn"}]
    assert decoder.feed("data: not json\n\n") == []
    assert decoder.close() == []


def test_scripted_feed_streams_tokens_and_completes() -> None:
    recorder = _Recorder()
    feed = ScriptedNarrativeFeed("a b", delay_seconds=0, spawn=_run_inline)
    feed.start("prompt", {}, *recorder.sinks())
    assert recorder.chunks == ["a", " ", "b"]
    assert recorder.completed == ["end_turn"]
    assert recorder.errors == []


def test_scripted_feed_cancel_mid_stream_completes_as_user_cancelled() -> None:
    deferred: list[Callable[[], None]] = []
    recorder = _Recorder()
    feed = ScriptedNarrativeFeed("one two three four", delay_seconds=0, spawn=deferred.append)
    holder: dict[str, Any] = {}

    def on_chunk(text: str) -> None:
        recorder.chunks.append(text)
        if len(recorder.chunks) == 3:
            holder["handle"].cancel()

    holder["handle"] = feed.start("prompt", {}, on_chunk, recorder.completed.append, recorder.errors.append)
    deferred[0]()

    assert recorder.chunks == ["one", " ", "two"]
    assert recorder.completed == [USER_CANCELLED]
    assert recorder.errors == []


def test_scripted_feed_failure_reports_single_error() -> None:
    recorder = _Recorder()
    feed = ScriptedNarrativeFeed("partial", delay_seconds=0, spawn=_run_inline, fail_with="connection reset")
    feed.start("prompt", {}, *recorder.sinks())
    assert recorder.chunks == ["partial"]
    assert recorder.errors == ["connection reset"]
    assert recorder.completed == []


def _http_feed(handler: Callable[[httpx.Request], httpx.Response]) -> HttpNarrativeFeed:
    return HttpNarrativeFeed(
        "http://narrative.test/generate",
        client_factory=lambda: httpx.Client(transport=httpx.MockTransport(handler)),
        spawn=_run_inline,
    )


def test_http_feed_posts_prompt_and_relays_events() -> None:
    seen: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        seen["accept"] = request.headers.get("accept")
        body = (
            'data: {"text": "r</thinking>"}\n\n'
            'data: {"text": "<narrative>N"}\n\n'
            'data: {"done": true, "stopReason": "max_tokens"}\n\n'
        )
        return httpx.Response(200, content=body.encode("utf-8"), headers={"content-type": "text/event-stream"})

    recorder = _Recorder()
    _http_feed(handler).start(
        "the prompt",
        {"system_prompt": "sys", "temperature": 0.5, "max_tokens": 10, "prefill": "<thinking>", "model_id": "m"},
        *recorder.sinks(),
    )

    assert seen["body"]["prompt"] == "the prompt"
    assert seen["body"]["model"] == "m"
    assert seen["accept"] == "text/event-stream"
    assert recorder.chunks == ["r</thinking>", "<narrative>N"]
    assert recorder.completed == ["max_tokens"]


def test_http_feed_error_event_and_status_are_reported() -> None:
    recorder = _Recorder()
    _http_feed(lambda request: httpx.Response(200, content=b'data: {"error": "overloaded"}\n\n')).start(
        "p", {}, *recorder.sinks()
    )
    assert recorder.errors == ["overloaded"]

    recorder = _Recorder()
    _http_feed(lambda request: httpx.Response(503, content=b"busy")).start("p", {}, *recorder.sinks())
    assert recorder.errors == ["Narrative endpoint returned HTTP 503."]
    assert recorder.completed == []


def test_http_feed_requires_endpoint() -> None:
    with pytest.raises(NarrativeFeedError):
        HttpNarrativeFeed("  ")


def test_llama_cpp_feed_without_model_path_reports_error() -> None:
    recorder = _Recorder()
    LlamaCppNarrativeFeed("", spawn=_run_inline).start("p", {}, *recorder.sinks())
    assert recorder.completed == []
    assert "model path is missing" in recorder.errors[0]
    raw = LlamaCppNarrativeFeed.build_raw_prompt("p", {"system_prompt": "s", "prefill": "<thinking>\nThis is a"})
    assert raw.endswith("<start_of_turn>model\n<thinking>\nThis is a")


def test_build_feed_selects_backend_from_config(monkeypatch) -> None:
    monkeypatch.setenv("THERAPYDOCS_USE_MOCK_API", "true")
    monkeypatch.delenv("THERAPYDOCS_NARRATIVE_BACKEND", raising=False)
    assert isinstance(build_feed(load_config()), ScriptedNarrativeFeed)

    monkeypatch.setenv("THERAPYDOCS_NARRATIVE_BACKEND", "http")
    monkeypatch.setenv("THERAPYDOCS_NARRATIVE_ENDPOINT", "http://localhost:9/generate")
    assert isinstance(build_feed(load_config()), HttpNarrativeFeed)


class _StalledStream(httpx.SyncByteStream):
    """Sends one event, then hangs until the response is closed."""

    def __init__(self) -> None:
        self.first_sent = threading.Event()
        self.closed = threading.Event()

    def __iter__(self) -> Iterator[bytes]:
        yield b'data: {"text": "<narrative>Clt"}\n\n'
        self.first_sent.set()
        self.closed.wait(timeout=5)

    def close(self) -> None:
        self.closed.set()


def test_http_feed_cancel_closes_a_stalled_stream() -> None:
    stream = _StalledStream()
    finished = threading.Event()
    recorder = _Recorder()

    def on_complete(stop_reason: str) -> None:
        recorder.completed.append(stop_reason)
        finished.set()

    feed = HttpNarrativeFeed(
        "http://narrative.test/generate",
        client_factory=lambda: httpx.Client(
            transport=httpx.MockTransport(lambda request: httpx.Response(200, stream=stream))
        ),
    )
    handle = feed.start("p", {}, recorder.chunks.append, on_complete, recorder.errors.append)

    assert stream.first_sent.wait(timeout=2)
    handle.cancel()

    assert finished.wait(timeout=2)
    assert stream.closed.is_set()
    assert recorder.chunks == ["<narrative>Clt"]
    assert recorder.completed == [USER_CANCELLED]
    assert recorder.errors == []


def test_threaded_feed_base_requires_a_producer() -> None:
    with pytest.raises(TypeError):
        _ThreadedFeed()
