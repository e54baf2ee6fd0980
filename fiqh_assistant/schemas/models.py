from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

Role = Literal["user", "assistant"]
Language = Literal["en", "ur"]
VoiceType = Literal["Ayesha", "Ahmed"]

INTRO_MESSAGE_ID = "welcome"
DEFAULT_VOICE: VoiceType = "Ayesha"
DEFAULT_LANGUAGE: Language = "en"


def _now_utc() -> datetime:
    return datetime.now(UTC)


class ConnectivityStatus(str, Enum):
    LOADING = "loading"
    CONNECTED = "connected"
    OFFLINE = "offline"
    MISSING_TABLE = "missing_table"


class _CamelModel(BaseModel):
    """Models persisted in the client cache keep the camelCase keys of the stored JSON."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class Source(_CamelModel):
    uri: str
    title: str = ""


class ImageAttachment(_CamelModel):
    data: str = Field(description="base64 encoded image bytes")
    mime_type: str


class ReplyAnchor(_CamelModel):
    id: str
    content: str
    role: Role


class Message(_CamelModel):
    id: str
    role: Role
    content: str = ""
    timestamp: datetime = Field(default_factory=_now_utc)
    image: Optional[ImageAttachment] = None
    sources: Optional[List[Source]] = None
    reply_to: Optional[ReplyAnchor] = None

    @property
    def is_intro(self) -> bool:
        return self.id == INTRO_MESSAGE_ID

    def anchor(self) -> ReplyAnchor:
        return ReplyAnchor(id=self.id, content=self.content, role=self.role)


class ChatSession(_CamelModel):
    """One persisted conversation. ``title`` and ``created_at`` never change after creation."""

    id: str
    title: str
    messages: List[Message] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_now_utc)


class StreamChunk(BaseModel):
    text: Optional[str] = None
    sources: Optional[List[Source]] = None


class Preferences(BaseModel):
    voice: VoiceType = DEFAULT_VOICE
    language: Language = DEFAULT_LANGUAGE


class Notice(BaseModel):
    message: str
    kind: Literal["general", "quota"] = "general"


class ReconcileResult(BaseModel):
    sessions: List[ChatSession]
    status: ConnectivityStatus
    active_session_id: Optional[str] = None
    messages: List[Message] = Field(default_factory=list)


class ChatRequest(BaseModel):
    prompt: str = ""
    image: Optional[ImageAttachment] = None
    reply_to_id: Optional[str] = None
    thinking: bool = Field(default=False, description="Use the deliberate reasoning model")


class SessionSummary(BaseModel):
    id: str
    title: str
    created_at: datetime
    message_count: int


class SessionListResponse(BaseModel):
    sessions: List[SessionSummary]
    status: ConnectivityStatus
    active_session_id: Optional[str] = None


class ConversationResponse(BaseModel):
    active_session_id: Optional[str] = None
    messages: List[Message]


class StatusResponse(BaseModel):
    status: ConnectivityStatus
    active_session_id: Optional[str] = None
    is_loading: bool = False
    notice: Optional[Notice] = None
    setup_required: bool = False


class PreferencesUpdate(BaseModel):
    voice: Optional[VoiceType] = None
    language: Optional[Language] = None


class ChatResponse(BaseModel):
    session_id: Optional[str] = None
    message: Optional[Message] = None
    notice: Optional[Notice] = None


class SpeechSegment(BaseModel):
    index: int
    text: str
    start_time: float
    duration: float


class SpeechResponse(BaseModel):
    message_id: str
    segments: List[SpeechSegment]
    total_duration: float = 0.0
