from __future__ import annotations

import asyncio
import os
from collections.abc import AsyncIterator
from typing import Any, Callable, Dict, List, Optional

from fiqh_assistant.pipelines.assembler import AssemblyEvent, ReplyProvider, StreamAssembler
from fiqh_assistant.pipelines.connectivity import ConnectivityState
from fiqh_assistant.pipelines.reconcile import SessionReconciler
from fiqh_assistant.pipelines.speech import (
    AudioOutput,
    PyAudioOutput,
    ScheduledSegment,
    SpeechScheduler,
    SpeechSynthesizer,
    TimelineOutput,
)
from fiqh_assistant.pipelines.sync import SyncPropagator
from fiqh_assistant.schemas.models import (
    ChatSession,
    ConnectivityStatus,
    ImageAttachment,
    Language,
    Message,
    Notice,
    Preferences,
    ReconcileResult,
    StatusResponse,
    VoiceType,
)
from fiqh_assistant.utils.errors import GenerationInterrupted, ReplyInProgress
from fiqh_assistant.utils.gemini import GeminiClient
from fiqh_assistant.utils.local_cache import LocalCache, default_store
from fiqh_assistant.utils.logging import get_logger
from fiqh_assistant.utils.remote_store import SessionTable, SupabaseSessionTable
from fiqh_assistant.utils.session import Conversation, SessionCollection, make_intro_message

log = get_logger(__name__)

_DONE = object()
_CANCELLED = object()


def _notice_for(exc: GenerationInterrupted) -> Notice:
    # 429 from the provider means the API quota is exhausted
    quota = getattr(exc.cause, "status_code", None) == 429
    return Notice(message=str(exc), kind="quota" if quota else "general")


def _default_output_factory() -> Callable[[], AudioOutput]:
    if os.getenv("FIQH_AUDIO_OUTPUT", "timeline").strip().lower() == "device":
        return PyAudioOutput
    return TimelineOutput


class ChatEngine:
    """Conversation session engine.

    Owns the visible conversation, the session collection and the connectivity
    status, and routes every user action through the reconciler, the sync
    propagator, the stream assembler and the per-message speech schedulers.
    """

    def __init__(
        self,
        cache: LocalCache,
        remote: Optional[SessionTable],
        provider: Any,
        *,
        output_factory: Callable[[], AudioOutput] | None = None,
    ) -> None:
        self.cache = cache
        self.remote = remote
        self.provider: ReplyProvider = provider
        self.synthesizer: SpeechSynthesizer = provider
        self.output_factory = output_factory or _default_output_factory()
        self.state = ConnectivityState()
        self.collection = SessionCollection()
        self.conversation = Conversation()
        self.sync = SyncPropagator(cache, remote, self.state, self.collection)
        self.reconciler = SessionReconciler(cache, remote, self.state, self.collection)
        self.preferences: Preferences = cache.load_preferences()
        self.notice: Optional[Notice] = None
        self.is_loading = False
        self._started = False
        self._reply_task: Optional[asyncio.Task[None]] = None
        self._speakers: Dict[str, SpeechScheduler] = {}

    @classmethod
    def from_env(cls, **kwargs: Any) -> "ChatEngine":
        return cls(LocalCache(default_store()), SupabaseSessionTable.from_env(), GeminiClient(), **kwargs)

    # -- lifecycle ---------------------------------------------------------

    async def start(self) -> ReconcileResult:
        self.preferences = self.cache.load_preferences()
        result = await self.reconciler.reconcile()
        if result.active_session_id:
            self.conversation.show(result.messages, result.active_session_id)
        else:
            self.conversation.show_intro(self.preferences.language)
        self._release_speakers()
        self._started = True
        log.info(
            "engine_started",
            status=result.status.value,
            sessions=len(result.sessions),
            active_session_id=result.active_session_id,
        )
        return result

    async def ensure_started(self) -> None:
        if not self._started:
            await self.start()

    async def reconnect(self) -> ConnectivityStatus:
        await self.sync.flush()
        await self.start()
        return self.state.status

    async def aclose(self) -> None:
        self.cancel_reply()
        if self._reply_task is not None:
            await asyncio.wait([self._reply_task])
        for scheduler in self._speakers.values():
            scheduler.close()
        self._speakers.clear()
        await self.sync.flush()

    # -- read side ---------------------------------------------------------

    @property
    def status(self) -> ConnectivityStatus:
        return self.state.status

    @property
    def active_session_id(self) -> Optional[str]:
        return self.conversation.active_session_id

    @property
    def messages(self) -> List[Message]:
        return self.conversation.messages

    @property
    def sessions(self) -> List[ChatSession]:
        return self.collection.snapshot()

    def status_report(self) -> StatusResponse:
        return StatusResponse(
            status=self.state.status,
            active_session_id=self.active_session_id,
            is_loading=self.is_loading,
            notice=self.notice,
            setup_required=self.state.setup_required,
        )

    # -- session lifecycle -------------------------------------------------

    def _activate(self, session_id: Optional[str]) -> None:
        self.cache.save_active_session_id(session_id)

    def new_chat(self) -> None:
        self.conversation.show_intro(self.preferences.language)
        self._release_speakers()
        self._activate(None)
        self.notice = None

    def switch_session(self, session_id: str) -> bool:
        session = self.collection.get(session_id)
        if session is None:
            return False
        self.conversation.show(session.messages, session.id)
        self._release_speakers()
        self._activate(session.id)
        self.notice = None
        return True

    def delete_session(self, session_id: str) -> bool:
        if not self.sync.delete_session(session_id):
            return False
        log.info("session_deleted", session_id=session_id, was_active=self.active_session_id == session_id)
        if self.active_session_id == session_id:
            self.new_chat()
        return True

    # -- preferences -------------------------------------------------------

    def set_language(self, language: Language) -> None:
        self.preferences = self.preferences.model_copy(update={"language": language})
        self.cache.save_language(language)
        if self.active_session_id is None and not self.conversation.has_real_messages():
            self.conversation.show_intro(language)

    def set_voice(self, voice: VoiceType) -> None:
        self.preferences = self.preferences.model_copy(update={"voice": voice})
        self.cache.save_voice(voice)

    def dismiss_notice(self) -> None:
        self.notice = None

    # -- replies -----------------------------------------------------------

    def _open_session(self, prompt: str) -> str:
        session = self.sync.create_session(prompt, [make_intro_message(self.preferences.language)])
        self.conversation.active_session_id = session.id
        self._activate(session.id)
        return session.id

    async def _drive(self, queue: "asyncio.Queue[Any]", assembler: StreamAssembler, **kwargs: Any) -> None:
        try:
            async for event in assembler.stream(**kwargs):
                queue.put_nowait(event)
        except Exception as exc:
            queue.put_nowait(exc)
            return
        queue.put_nowait(_DONE)

    async def stream_reply(
        self,
        prompt: str,
        *,
        image: ImageAttachment | None = None,
        reply_to_id: str | None = None,
        thinking: bool = False,
    ) -> AsyncIterator[AssemblyEvent]:
        """Send a prompt and yield the reply as it is assembled.

        The reply runs in its own task so it can be cancelled with ``cancel_reply()``;
        closing this iterator early cancels it too.
        """

        if self.is_loading:
            raise ReplyInProgress("a reply is already in progress")
        prompt = prompt.strip()
        if not prompt and image is None:
            raise ValueError("a prompt or an image is required")
        reply_to = None
        if reply_to_id:
            anchor = self.conversation.find(reply_to_id)
            if anchor is None:
                raise ValueError(f"unknown message {reply_to_id}")
            reply_to = anchor.anchor()

        self.is_loading = True
        self.notice = None
        if not self.active_session_id:
            self._open_session(prompt)

        assembler = StreamAssembler(self.conversation, self.provider, on_change=self.sync.messages_changed)
        queue: asyncio.Queue[Any] = asyncio.Queue()
        task = asyncio.get_running_loop().create_task(
            self._drive(
                queue,
                assembler,
                prompt=prompt,
                language=self.preferences.language,
                image=image,
                reply_to=reply_to,
                thinking=thinking,
            )
        )

        def _on_done(done: "asyncio.Task[None]") -> None:
            # a task cancelled before its first step never runs _drive's body
            if done.cancelled():
                queue.put_nowait(_CANCELLED)

        task.add_done_callback(_on_done)
        self._reply_task = task
        try:
            while True:
                item = await queue.get()
                if item is _DONE:
                    break
                if item is _CANCELLED:
                    log.info("reply_cancelled", session_id=self.active_session_id)
                    break
                if isinstance(item, GenerationInterrupted):
                    self.notice = _notice_for(item)
                    raise item
                if isinstance(item, BaseException):
                    raise item
                yield item
        finally:
            if not task.done():
                task.cancel()
                await asyncio.wait([task])
            self._reply_task = None
            self.is_loading = False

    async def send(
        self,
        prompt: str,
        *,
        image: ImageAttachment | None = None,
        reply_to_id: str | None = None,
        thinking: bool = False,
    ) -> Optional[Message]:
        final: Optional[Message] = None
        async for event in self.stream_reply(prompt, image=image, reply_to_id=reply_to_id, thinking=thinking):
            if event.kind == "completed":
                final = event.message
        return final

    def cancel_reply(self) -> bool:
        if self._reply_task is None or self._reply_task.done():
            return False
        self._reply_task.cancel()
        return True

    # -- speech ------------------------------------------------------------

    def speaker(self, message_id: str) -> Optional[SpeechScheduler]:
        return self._speakers.get(message_id)

    def _release_speakers(self, keep: str | None = None) -> None:
        """Close the schedulers of messages that are no longer visible, and all but ``keep`` when given."""

        visible = {message.id for message in self.conversation.messages}
        for message_id in list(self._speakers):
            if message_id == keep or (keep is None and message_id in visible):
                continue
            self._speakers.pop(message_id).close()
            log.debug("speaker_released", message_id=message_id)

    def speech_target(self, message_id: str | None = None) -> Message:
        """The visible message to read aloud; defaults to the latest non-empty assistant reply."""

        if message_id:
            message = self.conversation.find(message_id)
            if message is None:
                raise ValueError(f"unknown message {message_id}")
            return message
        for message in reversed(self.conversation.messages):
            if message.role == "assistant" and message.content.strip():
                return message
        raise ValueError("no assistant message to speak")

    async def speak(self, message_id: str | None = None) -> List[ScheduledSegment]:
        message = self.speech_target(message_id)
        self._release_speakers(keep=message.id)
        scheduler = self._speakers.get(message.id)
        if scheduler is None:
            scheduler = SpeechScheduler(self.synthesizer, self.output_factory)
            self._speakers[message.id] = scheduler
        return await scheduler.play(message.content, self.preferences.voice)

    def stop_speech(self, message_id: str | None = None) -> None:
        if message_id is not None:
            scheduler = self._speakers.get(message_id)
            if scheduler is not None:
                scheduler.cancel()
            return
        for scheduler in self._speakers.values():
            scheduler.cancel()


_ENGINE: ChatEngine | None = None


def get_engine() -> ChatEngine:
    global _ENGINE
    if _ENGINE is None:
        _ENGINE = ChatEngine.from_env()
    return _ENGINE


def set_engine(engine: ChatEngine | None) -> None:
    global _ENGINE
    _ENGINE = engine
