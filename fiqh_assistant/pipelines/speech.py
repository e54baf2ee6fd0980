from __future__ import annotations

import asyncio
import base64
import binascii
import itertools
import re
import threading
import wave
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from pathlib import Path
from typing import Any, BinaryIO, Callable, Deque, Dict, List, Optional, Protocol

import numpy as np

from fiqh_assistant.utils.errors import AudioDecodeError, SynthesisOrPlaybackFailure
from fiqh_assistant.utils.logging import get_logger
from fiqh_assistant.utils.observability import get_metrics
from fiqh_assistant.utils.translations import provider_voice, split_verbatim

log = get_logger(__name__)

SAMPLE_RATE = 24000
CHANNELS = 1
MIN_SPEAKABLE_LENGTH = 3

# Latin sentence marks, newline, Urdu full stop and Arabic question mark.
_SENTENCE_END = re.compile(r"([.!?\n۔؟])")


def split_segments(text: str) -> List[str]:
    """Split on sentence-ending marks, keeping each mark with the text before it."""

    pieces = _SENTENCE_END.split(text)
    segments: List[str] = []
    for index in range(0, len(pieces), 2):
        mark = pieces[index + 1] if index + 1 < len(pieces) else ""
        segment = (pieces[index] + mark).strip()
        if segment:
            segments.append(segment)
    return segments


def speakable_segments(text: str) -> List[str]:
    answer, _ = split_verbatim(text)
    return [segment for segment in split_segments(answer) if len(segment.strip()) >= MIN_SPEAKABLE_LENGTH]


@dataclass
class AudioBuffer:
    samples: np.ndarray
    sample_rate: int = SAMPLE_RATE

    @property
    def duration(self) -> float:
        return len(self.samples) / float(self.sample_rate)


def decode_pcm(payload: str, sample_rate: int = SAMPLE_RATE) -> AudioBuffer:
    """Decode base64 little-endian 16-bit mono PCM into float samples in [-1, 1)."""

    try:
        raw = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise AudioDecodeError(f"payload is not valid base64: {exc}") from exc
    if len(raw) % 2:
        raise AudioDecodeError(f"odd PCM byte count {len(raw)}")
    samples = np.frombuffer(raw, dtype="<i2").astype(np.float32) / 32768.0
    return AudioBuffer(samples=samples, sample_rate=sample_rate)


class PlaybackState(str, Enum):
    IDLE = "idle"
    PLAYING = "playing"


class PlaybackHandle(Protocol):
    def stop(self) -> None: ...


class AudioOutput(Protocol):
    @property
    def current_time(self) -> float: ...

    def schedule(self, buffer: AudioBuffer, start_time: float, on_ended: Callable[[], None]) -> PlaybackHandle: ...

    def close(self) -> None: ...


class SpeechSynthesizer(Protocol):
    async def synthesize_speech(self, text: str, voice: str) -> Optional[str]: ...


@dataclass
class ScheduledSegment:
    index: int
    text: str
    start_time: float
    duration: float

    @property
    def end_time(self) -> float:
        return self.start_time + self.duration


class SpeechScheduler:
    """Plays one message as independently synthesized segments, back to back.

    One scheduler owns one lazily created audio output. ``cancel()`` is synchronous
    and may be called in any state.
    """

    def __init__(self, synthesizer: SpeechSynthesizer, output_factory: Callable[[], AudioOutput]) -> None:
        self.synthesizer = synthesizer
        self._output_factory = output_factory
        self._output: Optional[AudioOutput] = None
        self.state = PlaybackState.IDLE
        self._pending: Deque[str] = deque()
        self._live: Dict[int, PlaybackHandle] = {}
        self._tokens = itertools.count(1)
        self._next_start = 0.0
        self._cancelled = False
        self._feeding = False
        self._generation = 0
        self._idle = asyncio.Event()
        self._idle.set()

    @property
    def output(self) -> Optional[AudioOutput]:
        return self._output

    @property
    def live_count(self) -> int:
        return len(self._live)

    @property
    def pending(self) -> List[str]:
        return list(self._pending)

    def _ensure_output(self) -> AudioOutput:
        if self._output is None:
            self._output = self._output_factory()
        return self._output

    def _to_idle(self) -> None:
        self.state = PlaybackState.IDLE
        self._idle.set()

    def _halt(self) -> None:
        self._pending.clear()
        live, self._live = self._live, {}
        for handle in live.values():
            handle.stop()
        self._to_idle()

    def _active(self, generation: int) -> bool:
        return not self._cancelled and generation == self._generation

    async def play(self, text: str, voice: str) -> List[ScheduledSegment]:
        self.cancel()
        self._generation += 1
        generation = self._generation
        self._cancelled = False
        self._pending = deque(speakable_segments(text))
        self._next_start = 0.0
        self.state = PlaybackState.PLAYING
        self._idle.clear()
        self._feeding = True

        metrics = get_metrics()
        scheduled: List[ScheduledSegment] = []
        index = 0
        try:
            output = self._ensure_output()
            while self._pending:
                if not self._active(generation):
                    break
                segment = self._pending.popleft()
                index += 1
                payload = await self.synthesizer.synthesize_speech(segment, provider_voice(voice))
                if not self._active(generation):
                    break
                if not payload:
                    metrics.increment_counter("speech::segment_skipped")
                    log.info("speech_segment_skipped", index=index, chars=len(segment))
                    continue
                buffer = decode_pcm(payload)
                start = max(self._next_start, output.current_time)
                token = next(self._tokens)
                self._live[token] = output.schedule(buffer, start, partial(self._on_ended, token, generation))
                self._next_start = start + buffer.duration
                scheduled.append(ScheduledSegment(index, segment, start, buffer.duration))
        except asyncio.CancelledError:
            if generation == self._generation:
                self.cancel()
            raise
        except Exception as exc:
            if generation == self._generation:
                metrics.increment_counter("speech::failed")
                log.warning(
                    "speech_playback_failed",
                    index=index,
                    error=str(exc),
                    synthesis_or_playback=isinstance(exc, SynthesisOrPlaybackFailure),
                )
                self._halt()
            return scheduled
        finally:
            if generation == self._generation:
                self._feeding = False

        if self._active(generation) and not self._live:
            self._to_idle()
        return scheduled

    def _on_ended(self, token: int, generation: int) -> None:
        if generation != self._generation or self._live.pop(token, None) is None:
            return
        if not self._live and not self._pending and not self._feeding:
            self._to_idle()

    def cancel(self) -> None:
        was_playing = self.state is PlaybackState.PLAYING
        self._cancelled = True
        self._halt()
        if was_playing:
            get_metrics().increment_counter("speech::cancelled")
            log.info("speech_cancelled", generation=self._generation)

    async def wait_until_idle(self) -> None:
        await self._idle.wait()

    def close(self) -> None:
        self.cancel()
        if self._output is not None:
            self._output.close()
            self._output = None


@dataclass
class _TimelineEntry:
    buffer: AudioBuffer
    start_time: float
    timer: Optional[asyncio.TimerHandle] = None
    on_ended: Callable[[], None] = field(default=lambda: None)
    stopped: bool = False

    def stop(self) -> None:
        self.stopped = True
        if self.timer is not None:
            self.timer.cancel()

    def _fire(self) -> None:
        if not self.stopped:
            self.on_ended()


class TimelineOutput:
    """Audio output that records the schedule instead of driving a device.

    With ``realtime=False`` the clock stands still, so every segment lands on the
    gapless timeline and ends as soon as the loop gets control. The recorded
    timeline can be mixed down and written to a WAV file.
    """

    def __init__(self, *, realtime: bool = False, sample_rate: int = SAMPLE_RATE) -> None:
        self.realtime = realtime
        self.sample_rate = sample_rate
        self.entries: List[_TimelineEntry] = []
        self._loop = asyncio.get_running_loop()
        self._origin = self._loop.time()
        self.closed = False

    @property
    def current_time(self) -> float:
        if not self.realtime:
            return 0.0
        return self._loop.time() - self._origin

    def schedule(self, buffer: AudioBuffer, start_time: float, on_ended: Callable[[], None]) -> _TimelineEntry:
        if self.closed:
            raise SynthesisOrPlaybackFailure("audio output is closed")
        entry = _TimelineEntry(buffer=buffer, start_time=start_time, on_ended=on_ended)
        if self.realtime:
            delay = max(start_time + buffer.duration - self.current_time, 0.0)
            entry.timer = self._loop.call_later(delay, entry._fire)
        else:
            entry.timer = self._loop.call_later(0, entry._fire)
        self.entries.append(entry)
        return entry

    def render(self, entries: Optional[List[_TimelineEntry]] = None) -> np.ndarray:
        kept = [entry for entry in (self.entries if entries is None else entries) if not entry.stopped]
        if not kept:
            return np.zeros(0, dtype=np.float32)
        total = max(int(round(entry.start_time * self.sample_rate)) + len(entry.buffer.samples) for entry in kept)
        mix = np.zeros(total, dtype=np.float32)
        for entry in kept:
            offset = int(round(entry.start_time * self.sample_rate))
            mix[offset : offset + len(entry.buffer.samples)] += entry.buffer.samples
        return np.clip(mix, -1.0, 1.0)

    def latest(self, count: int) -> List[_TimelineEntry]:
        """The last ``count`` scheduled entries, e.g. the segments of the latest playback."""

        return self.entries[-count:] if count > 0 else []

    def write_wav(self, target: str | Path | BinaryIO, entries: Optional[List[_TimelineEntry]] = None) -> None:
        if isinstance(target, (str, Path)):
            Path(target).parent.mkdir(parents=True, exist_ok=True)
            target = str(target)
        pcm = (self.render(entries) * 32767.0).astype("<i2")
        with wave.open(target, "wb") as handle:
            handle.setnchannels(CHANNELS)
            handle.setsampwidth(2)
            handle.setframerate(self.sample_rate)
            handle.writeframes(pcm.tobytes())

    def close(self) -> None:
        self.closed = True
        for entry in self.entries:
            if entry.timer is not None:
                entry.timer.cancel()


class _DeviceVoice:
    def __init__(
        self,
        output: "PyAudioOutput",
        samples: np.ndarray,
        start_frame: int,
        on_ended: Callable[[], None],
    ) -> None:
        self._output = output
        self.samples = samples
        self.start_frame = start_frame
        self.on_ended = on_ended

    @property
    def end_frame(self) -> int:
        return self.start_frame + len(self.samples)

    def stop(self) -> None:
        self._output._drop(self)


class PyAudioOutput:
    """Sound-card output; a callback stream mixes scheduled voices against a frame clock."""

    def __init__(self, *, sample_rate: int = SAMPLE_RATE) -> None:
        try:
            import pyaudio
        except ImportError as exc:
            raise SynthesisOrPlaybackFailure("PyAudio is not installed; install the 'audio' extra") from exc

        self._pyaudio = pyaudio
        self.sample_rate = sample_rate
        self._loop = asyncio.get_running_loop()
        self._lock = threading.Lock()
        self._voices: List[_DeviceVoice] = []
        self._frame = 0
        self._audio = pyaudio.PyAudio()
        self._stream = self._audio.open(
            format=pyaudio.paInt16,
            channels=CHANNELS,
            rate=sample_rate,
            output=True,
            stream_callback=self._callback,
        )
        self._stream.start_stream()

    @property
    def current_time(self) -> float:
        with self._lock:
            return self._frame / float(self.sample_rate)

    def schedule(self, buffer: AudioBuffer, start_time: float, on_ended: Callable[[], None]) -> _DeviceVoice:
        voice = _DeviceVoice(self, buffer.samples, int(round(start_time * self.sample_rate)), on_ended)
        with self._lock:
            self._voices.append(voice)
        return voice

    def _drop(self, voice: _DeviceVoice) -> None:
        with self._lock:
            if voice in self._voices:
                self._voices.remove(voice)

    def _callback(self, in_data: Any, frame_count: int, time_info: Any, status: int):
        mix = np.zeros(frame_count, dtype=np.float32)
        finished: List[_DeviceVoice] = []
        with self._lock:
            window_start = self._frame
            window_end = window_start + frame_count
            for voice in self._voices:
                lo = max(voice.start_frame, window_start)
                hi = min(voice.end_frame, window_end)
                if lo < hi:
                    mix[lo - window_start : hi - window_start] += voice.samples[
                        lo - voice.start_frame : hi - voice.start_frame
                    ]
                if voice.end_frame <= window_end:
                    finished.append(voice)
            for voice in finished:
                self._voices.remove(voice)
            self._frame = window_end
        for voice in finished:
            self._loop.call_soon_threadsafe(voice.on_ended)
        pcm = (np.clip(mix, -1.0, 1.0) * 32767.0).astype("<i2")
        return pcm.tobytes(), self._pyaudio.paContinue

    def close(self) -> None:
        with self._lock:
            self._voices.clear()
        self._stream.stop_stream()
        self._stream.close()
        self._audio.terminate()
