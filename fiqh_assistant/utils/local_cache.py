from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol, get_args

from pydantic import TypeAdapter, ValidationError

from fiqh_assistant.schemas.models import (
    DEFAULT_LANGUAGE,
    DEFAULT_VOICE,
    ChatSession,
    Language,
    Preferences,
    VoiceType,
)
from fiqh_assistant.utils.errors import LocalParseFailure
from fiqh_assistant.utils.logging import get_logger

log = get_logger(__name__)

VOICE_STORAGE_KEY = "al_fiqh_selected_voice"
LANG_STORAGE_KEY = "al_fiqh_selected_lang"
ACTIVE_SESSION_KEY = "al_fiqh_active_session_id"
LOCAL_SESSIONS_KEY = "al_fiqh_local_sessions"

DEFAULT_CACHE_PATH = Path("assets/data/local_cache.json")

_SESSIONS_ADAPTER = TypeAdapter(List[ChatSession])


class KeyValueStore(Protocol):
    """Durable string-keyed blob storage on the client device."""

    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...


class MemoryKeyValueStore:
    def __init__(self, initial: Dict[str, str] | None = None) -> None:
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileKeyValueStore:
    """Key/value blobs kept in one JSON object on disk, rewritten atomically on every change."""

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)
        self._data: Dict[str, str] = self._load()

    def _load(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            log.warning("local_store_unreadable", path=str(self.path), error=str(exc))
            return {}
        if not isinstance(payload, dict):
            log.warning("local_store_unexpected_shape", path=str(self.path))
            return {}
        return {str(key): value for key, value in payload.items() if isinstance(value, str)}

    def _flush(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(self._data, ensure_ascii=False, indent=2), encoding="utf-8")
        tmp_path.replace(self.path)

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value
        self._flush()

    def remove(self, key: str) -> None:
        if self._data.pop(key, None) is not None:
            self._flush()


def default_store() -> JsonFileKeyValueStore:
    return JsonFileKeyValueStore(os.getenv("FIQH_CACHE_PATH", str(DEFAULT_CACHE_PATH)))


def decode_sessions(raw: str) -> List[ChatSession]:
    try:
        return _SESSIONS_ADAPTER.validate_json(raw)
    except ValidationError as exc:
        raise LocalParseFailure(f"cached sessions are malformed: {exc.error_count()} errors") from exc


def encode_sessions(sessions: Iterable[ChatSession]) -> str:
    return json.dumps([session.to_json_dict() for session in sessions], ensure_ascii=False)


class LocalCache:
    """Typed access to the session collection and scalar preferences."""

    def __init__(self, store: KeyValueStore) -> None:
        self.store = store

    def load_sessions(self) -> List[ChatSession]:
        raw = self.store.get(LOCAL_SESSIONS_KEY)
        if not raw:
            return []
        try:
            return decode_sessions(raw)
        except LocalParseFailure as exc:
            log.warning("local_cache_parse_failed", error=str(exc))
            return []

    def save_sessions(self, sessions: Iterable[ChatSession]) -> None:
        self.store.set(LOCAL_SESSIONS_KEY, encode_sessions(sessions))

    def load_active_session_id(self) -> Optional[str]:
        return self.store.get(ACTIVE_SESSION_KEY) or None

    def save_active_session_id(self, session_id: Optional[str]) -> None:
        self.store.set(ACTIVE_SESSION_KEY, session_id or "")

    def load_voice(self) -> VoiceType:
        value = self.store.get(VOICE_STORAGE_KEY)
        return value if value in get_args(VoiceType) else DEFAULT_VOICE  # type: ignore[return-value]

    def save_voice(self, voice: VoiceType) -> None:
        self.store.set(VOICE_STORAGE_KEY, voice)

    def load_language(self) -> Language:
        value = self.store.get(LANG_STORAGE_KEY)
        return value if value in get_args(Language) else DEFAULT_LANGUAGE  # type: ignore[return-value]

    def save_language(self, language: Language) -> None:
        self.store.set(LANG_STORAGE_KEY, language)

    def load_preferences(self) -> Preferences:
        return Preferences(voice=self.load_voice(), language=self.load_language())
