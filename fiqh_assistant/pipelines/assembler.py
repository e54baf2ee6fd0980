from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Callable, List, Literal, Optional, Protocol, Sequence

from fiqh_assistant.schemas.models import ImageAttachment, Message, ReplyAnchor, Source, StreamChunk
from fiqh_assistant.utils.errors import GenerationInterrupted
from fiqh_assistant.utils.logging import get_logger
from fiqh_assistant.utils.observability import get_metrics, time_phase
from fiqh_assistant.utils.session import Conversation, new_id
from fiqh_assistant.utils.tracing import start_span
from fiqh_assistant.utils.translations import (
    IMAGE_ONLY_CONTENT,
    INTERRUPTED_NOTICE,
    REPLY_QUOTE_LENGTH,
    language_directive,
)

log = get_logger(__name__)


class ReplyProvider(Protocol):
    def generate_stream(
        self,
        prompt: str,
        history: Sequence[Message],
        *,
        thinking: bool = False,
        image: ImageAttachment | None = None,
    ) -> AsyncIterator[StreamChunk]: ...


@dataclass
class AssemblyEvent:
    kind: Literal["user", "chunk", "completed"]
    message: Message


def compose_prompt(prompt: str, language: str, reply_to: ReplyAnchor | None = None) -> str:
    directive = language_directive(language)
    if reply_to is None:
        return f"{directive}\n{prompt}"
    quoted = reply_to.content[:REPLY_QUOTE_LENGTH]
    return f'{directive}\nCONTEXT: Referring to previous message: "{quoted}..." \n\n QUERY: {prompt}'


def build_user_message(
    prompt: str,
    *,
    image: ImageAttachment | None = None,
    reply_to: ReplyAnchor | None = None,
) -> Message:
    return Message(
        id=new_id(),
        role="user",
        content=prompt or IMAGE_ONLY_CONTENT,
        image=image,
        reply_to=reply_to,
    )


class StreamAssembler:
    """Materializes one assistant reply from the provider's chunk sequence.

    Only this code path mutates the placeholder while the reply streams. Any failure
    or cancellation removes the placeholder; the user message stays.
    """

    def __init__(
        self,
        conversation: Conversation,
        provider: ReplyProvider,
        on_change: Callable[[Conversation], object] | None = None,
    ) -> None:
        self.conversation = conversation
        self.provider = provider
        self.on_change = on_change

    def _changed(self) -> None:
        if self.on_change is not None:
            self.on_change(self.conversation)

    async def stream(
        self,
        prompt: str,
        *,
        language: str,
        image: ImageAttachment | None = None,
        reply_to: ReplyAnchor | None = None,
        thinking: bool = False,
    ) -> AsyncIterator[AssemblyEvent]:
        prompt = prompt.strip()
        if not prompt and image is None:
            raise ValueError("a prompt or an image is required")

        history = self.conversation.messages
        user_message = build_user_message(prompt, image=image, reply_to=reply_to)
        placeholder = Message(id=new_id(), role="assistant", content="", sources=[])
        self.conversation.append(user_message, placeholder)
        self._changed()

        metrics = get_metrics()
        content = ""
        sources: List[Source] = []
        chunks = 0
        with start_span(
            "chat.generation",
            {"chat.thinking": thinking, "chat.has_image": image is not None, "chat.language": language},
        ) as span:
            try:
                yield AssemblyEvent("user", user_message)
                with time_phase(metrics, "generation"):
                    replies = self.provider.generate_stream(
                        compose_prompt(prompt, language, reply_to),
                        history,
                        thinking=thinking,
                        image=image,
                    )
                    async for chunk in replies:
                        chunks += 1
                        if chunk.text:
                            content += chunk.text
                        if chunk.sources:
                            sources.extend(chunk.sources)
                        self.conversation.update_message(placeholder.id, content=content, sources=sources)
                        self._changed()
                        current = self.conversation.find(placeholder.id)
                        if current is not None:
                            yield AssemblyEvent("chunk", current)
            except (asyncio.CancelledError, GeneratorExit):
                self._discard(placeholder.id)
                log.info("stream_cancelled", message_id=placeholder.id, chunks=chunks)
                raise
            except Exception as exc:
                self._discard(placeholder.id)
                metrics.increment_counter("stream::interrupted")
                log.warning("stream_interrupted", message_id=placeholder.id, chunks=chunks, error=str(exc))
                raise GenerationInterrupted(INTERRUPTED_NOTICE, cause=exc) from exc
            span.set_attribute("chat.chunks", chunks)

        metrics.increment_counter("stream::completed")
        log.info("stream_completed", message_id=placeholder.id, chunks=chunks, sources=len(sources))
        final = self.conversation.find(placeholder.id) or placeholder
        yield AssemblyEvent("completed", final)

    def _discard(self, message_id: str) -> None:
        if self.conversation.remove_message(message_id):
            self._changed()

    async def run(
        self,
        prompt: str,
        *,
        language: str,
        image: ImageAttachment | None = None,
        reply_to: ReplyAnchor | None = None,
        thinking: bool = False,
    ) -> Optional[Message]:
        """Drive the whole reply and return the completed assistant message."""

        final: Optional[Message] = None
        async for event in self.stream(
            prompt, language=language, image=image, reply_to=reply_to, thinking=thinking
        ):
            if event.kind == "completed":
                final = event.message
        return final
