from __future__ import annotations

import json
import os
from collections.abc import AsyncIterator
from typing import Any, Dict, List, Optional, Sequence

import httpx
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from fiqh_assistant.schemas.models import ImageAttachment, Message, Source, StreamChunk
from fiqh_assistant.utils.env import get_float_env, get_int_env
from fiqh_assistant.utils.errors import ConfigError
from fiqh_assistant.utils.logging import get_logger
from fiqh_assistant.utils.observability import get_metrics, time_phase

log = get_logger(__name__)

_DEFAULT_BASE = "https://generativelanguage.googleapis.com/v1beta"
_DEFAULT_MODEL = "gemini-2.5-flash"
_DEFAULT_THINKING_MODEL = "gemini-2.5-pro"
_DEFAULT_TTS_MODEL = "gemini-2.5-flash-preview-tts"

OFFLINE_REPLY = "[offline] Unable to call model. Provide GEMINI_API_KEY to enable generation."

SYSTEM_INSTRUCTION = (
    "You are the Al-Fiqh Assistant, a retrieval assistant for Islamic jurisprudence."
    " Answer ONLY from these authorized sources: Jamia Binoria (banuri.edu.pk), Darul Uloom Karachi"
    " (darululoomkarachi.edu.pk), Darul Ifta Deoband (darulifta-deoband.com), Suffah PK (suffahpk.com)"
    " and Darul Ifta (darulifta.info). Use search to locate the relevant fatwa, summarise the ruling plainly,"
    " then add a section starting with 'OFFICIAL VERBATIM RECORD' quoting the fatwa text and its reference."
    " If no authorized source covers the question, say so and advise consulting a Darul Ifta directly."
)


class GeminiError(RuntimeError):
    """Raised when the generative endpoint reports an error."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def _base_url() -> str:
    return os.getenv("GEMINI_BASE", _DEFAULT_BASE).rstrip("/")


def _api_key() -> str | None:
    return os.getenv("GEMINI_API_KEY")


def _enabled() -> bool:
    return bool(_api_key())


def _headers() -> Dict[str, str]:
    key = _api_key()
    if not key:
        raise ConfigError("GEMINI_API_KEY is not configured")
    return {"x-goog-api-key": key, "Content-Type": "application/json"}


def _history_limit() -> int:
    return get_int_env("GEMINI_HISTORY_LIMIT", 10)


def _tts_max_attempts() -> int:
    return get_int_env("GEMINI_TTS_MAX_ATTEMPTS", 3)


def _is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, GeminiError):
        return exc.status_code is not None and (exc.status_code == 429 or exc.status_code >= 500)
    return False


def history_contents(history: Sequence[Message], limit: int | None = None) -> List[Dict[str, Any]]:
    """Map prior messages onto provider turns, dropping the intro and empty placeholders."""

    bound = limit if limit is not None else _history_limit()
    usable = [message for message in history if not message.is_intro and message.content.strip()]
    contents: List[Dict[str, Any]] = []
    for message in usable[-bound:] if bound > 0 else []:
        role = "model" if message.role == "assistant" else "user"
        contents.append({"role": role, "parts": [{"text": message.content}]})
    return contents


def build_generation_payload(
    prompt: str,
    history: Sequence[Message],
    *,
    thinking: bool = False,
    image: ImageAttachment | None = None,
) -> Dict[str, Any]:
    parts: List[Dict[str, Any]] = [{"text": prompt}]
    if image is not None:
        parts.append({"inlineData": {"mimeType": image.mime_type, "data": image.data}})
    payload: Dict[str, Any] = {
        "contents": [*history_contents(history), {"role": "user", "parts": parts}],
        "systemInstruction": {"parts": [{"text": SYSTEM_INSTRUCTION}]},
        "tools": [{"googleSearch": {}}],
    }
    if thinking:
        budget = get_int_env("GEMINI_THINKING_BUDGET", 8192)
        payload["generationConfig"] = {"thinkingConfig": {"thinkingBudget": budget}}
    return payload


def parse_stream_event(event: Dict[str, Any]) -> Optional[StreamChunk]:
    if "error" in event:
        error = event.get("error") or {}
        raise GeminiError(str(error.get("message") or error), status_code=error.get("code"))
    candidates = event.get("candidates") or []
    if not candidates:
        return None
    first = candidates[0] or {}
    parts = (first.get("content") or {}).get("parts") or []
    text = "".join(
        str(part.get("text") or "") for part in parts if isinstance(part, dict) and not part.get("thought")
    )
    grounding = first.get("groundingMetadata") or {}
    sources: List[Source] = []
    for chunk in grounding.get("groundingChunks") or []:
        web = (chunk or {}).get("web") or {}
        uri = web.get("uri")
        if uri:
            sources.append(Source(uri=uri, title=web.get("title") or uri))
    if not text and not sources:
        return None
    return StreamChunk(text=text or None, sources=sources or None)


class GeminiClient:
    """Generative reply and speech synthesis provider backed by the Gemini REST API."""

    def __init__(self, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._transport = transport

    def _client(self, timeout: httpx.Timeout | float) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=timeout, transport=self._transport)

    async def generate_stream(
        self,
        prompt: str,
        history: Sequence[Message],
        *,
        thinking: bool = False,
        image: ImageAttachment | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Stream reply chunks; raises on transport or provider errors at any point."""

        if not _enabled():
            yield StreamChunk(text=OFFLINE_REPLY)
            return

        model = os.getenv("GEMINI_THINKING_MODEL", _DEFAULT_THINKING_MODEL) if thinking else os.getenv(
            "GEMINI_MODEL", _DEFAULT_MODEL
        )
        payload = build_generation_payload(prompt, history, thinking=thinking, image=image)
        timeout = httpx.Timeout(get_float_env("GEMINI_CONNECT_TIMEOUT_SECONDS", 30.0), read=None)
        async with self._client(timeout) as client:
            async with client.stream(
                "POST",
                f"{_base_url()}/models/{model}:streamGenerateContent",
                params={"alt": "sse"},
                headers=_headers(),
                json=payload,
            ) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise GeminiError(body or f"HTTP {response.status_code}", status_code=response.status_code)
                async for line in response.aiter_lines():
                    if not line or not line.startswith("data:"):
                        continue
                    raw = line[5:].strip()
                    if not raw:
                        continue
                    if raw == "[DONE]":
                        break
                    try:
                        event = json.loads(raw)
                    except json.JSONDecodeError:
                        log.debug("gemini_stream_undecodable_event", size=len(raw))
                        continue
                    chunk = parse_stream_event(event)
                    if chunk is not None:
                        yield chunk

    async def synthesize_speech(self, text: str, voice: str) -> Optional[str]:
        """Return base64 16-bit mono PCM for ``text``, or None when there is nothing to speak."""

        if not _enabled():
            log.debug("gemini_speech_offline")
            return None

        metrics = get_metrics()
        payload = {
            "contents": [{"parts": [{"text": text}]}],
            "generationConfig": {
                "responseModalities": ["AUDIO"],
                "speechConfig": {"voiceConfig": {"prebuiltVoiceConfig": {"voiceName": voice}}},
            },
        }
        model = os.getenv("GEMINI_TTS_MODEL", _DEFAULT_TTS_MODEL)
        max_attempts = max(_tts_max_attempts(), 1)
        timeout = get_float_env("GEMINI_TTS_TIMEOUT_SECONDS", 60.0)

        with time_phase(metrics, "synthesis"):
            async with self._client(timeout) as client:
                async for attempt in AsyncRetrying(
                    wait=wait_exponential(multiplier=1, min=0.5, max=4),
                    stop=stop_after_attempt(max_attempts),
                    retry=retry_if_exception(_is_retryable),
                    reraise=True,
                ):
                    if attempt.retry_state.attempt_number > 1:
                        metrics.increment_counter("synthesis_retry::attempt")
                        log.warning(
                            "gemini_speech_retry",
                            attempt=attempt.retry_state.attempt_number,
                            max_attempts=max_attempts,
                        )
                    with attempt:
                        response = await client.post(
                            f"{_base_url()}/models/{model}:generateContent",
                            headers=_headers(),
                            json=payload,
                        )
                        if response.status_code >= 400:
                            raise GeminiError(response.text, status_code=response.status_code)
                        data = response.json()

        candidates = data.get("candidates") or []
        parts = ((candidates[0] or {}).get("content") or {}).get("parts") or [] if candidates else []
        for part in parts:
            inline = (part or {}).get("inlineData") or {}
            if inline.get("data"):
                return str(inline["data"])
        return None
