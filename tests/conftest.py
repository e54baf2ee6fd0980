import asyncio
import base64
from typing import Any, Dict, List, Optional

import pytest

from fiqh_assistant.agents import chat_agent
from fiqh_assistant.agents.chat_agent import ChatEngine
from fiqh_assistant.schemas.models import StreamChunk
from fiqh_assistant.utils.local_cache import LocalCache, MemoryKeyValueStore
from fiqh_assistant.utils.observability import get_metrics
from fiqh_assistant.utils.remote_store import InMemorySessionTable

MANAGED_ENVS = [
    "GEMINI_API_KEY",
    "GEMINI_BASE",
    "GEMINI_MODEL",
    "GEMINI_THINKING_MODEL",
    "GEMINI_THINKING_BUDGET",
    "GEMINI_TTS_MODEL",
    "GEMINI_HISTORY_LIMIT",
    "GEMINI_TTS_MAX_ATTEMPTS",
    "SUPABASE_URL",
    "SUPABASE_ANON_KEY",
    "SUPABASE_TABLE",
    "FIQH_AUDIO_OUTPUT",
    "OTEL_EXPORTER_OTLP_ENDPOINT",
]


def pcm_payload(samples: int, value: int = 0) -> str:
    """Base64 16-bit little-endian mono PCM of ``samples`` identical frames."""

    return base64.b64encode(int(value).to_bytes(2, "little", signed=True) * samples).decode("ascii")


class FakeProvider:
    """Scripted generative and speech provider."""

    def __init__(self, chunks: Optional[List[StreamChunk]] = None) -> None:
        self.chunks = list(chunks or [StreamChunk(text="Wudu is required.")])
        self.fail_after: Optional[int] = None
        self.error: Exception = RuntimeError("provider dropped the stream")
        self.chunk_gate: Optional[asyncio.Event] = None
        self.calls: List[Dict[str, Any]] = []
        self.audio: Dict[str, Optional[str]] = {}
        self.default_audio: Optional[str] = pcm_payload(2400)
        self.speech_calls: List[tuple[str, str]] = []
        self.speech_gates: Dict[str, asyncio.Event] = {}
        self.speech_error: Optional[Exception] = None

    async def generate_stream(self, prompt, history, *, thinking=False, image=None):
        self.calls.append({"prompt": prompt, "history": list(history), "thinking": thinking, "image": image})
        for index, chunk in enumerate(self.chunks):
            if self.fail_after is not None and index >= self.fail_after:
                raise self.error
            if self.chunk_gate is not None:
                await self.chunk_gate.wait()
            await asyncio.sleep(0)
            yield chunk
        if self.fail_after is not None and self.fail_after >= len(self.chunks):
            raise self.error

    async def synthesize_speech(self, text: str, voice: str) -> Optional[str]:
        self.speech_calls.append((text, voice))
        gate = self.speech_gates.get(text)
        if gate is not None:
            await gate.wait()
        await asyncio.sleep(0)
        if self.speech_error is not None:
            raise self.speech_error
        return self.audio.get(text, self.default_audio)


class FakeHandle:
    def __init__(self, buffer, start_time, on_ended) -> None:
        self.buffer = buffer
        self.start_time = start_time
        self.on_ended = on_ended
        self.stopped = False

    def stop(self) -> None:
        self.stopped = True

    def finish(self) -> None:
        self.on_ended()


class FakeOutput:
    """Audio output with a hand-driven clock; playback only ends when a test says so."""

    def __init__(self) -> None:
        self.current_time = 0.0
        self.handles: List[FakeHandle] = []
        self.closed = False

    def schedule(self, buffer, start_time, on_ended) -> FakeHandle:
        handle = FakeHandle(buffer, start_time, on_ended)
        self.handles.append(handle)
        return handle

    def close(self) -> None:
        self.closed = True


class OutputPool:
    """Output factory that hands out a fresh FakeOutput on every call."""

    def __init__(self) -> None:
        self.outputs: List[FakeOutput] = []

    def __call__(self) -> FakeOutput:
        self.outputs.append(FakeOutput())
        return self.outputs[-1]


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch, tmp_path):
    for name in MANAGED_ENVS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("FIQH_CACHE_PATH", str(tmp_path / "local_cache.json"))
    get_metrics().reset()
    chat_agent.set_engine(None)
    yield
    chat_agent.set_engine(None)
    get_metrics().reset()


@pytest.fixture
def store():
    return MemoryKeyValueStore()


@pytest.fixture
def cache(store):
    return LocalCache(store)


@pytest.fixture
def remote():
    return InMemorySessionTable()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def output():
    return FakeOutput()


@pytest.fixture
def make_engine(cache, remote, provider, output):
    def factory(*, remote_table=remote, engine_provider=provider, output_factory=None) -> ChatEngine:
        return ChatEngine(
            cache,
            remote_table,
            engine_provider,
            output_factory=output_factory or (lambda: output),
        )

    return factory


@pytest.fixture
def pcm():
    return pcm_payload


@pytest.fixture
def output_pool():
    return OutputPool()
