from __future__ import annotations

import uuid
from typing import Iterable, Iterator, List, Optional

from fiqh_assistant.schemas.models import INTRO_MESSAGE_ID, ChatSession, Message, Source
from fiqh_assistant.utils.translations import intro_message


def new_id() -> str:
    return uuid.uuid4().hex


def make_intro_message(language: str) -> Message:
    return Message(id=INTRO_MESSAGE_ID, role="assistant", content=intro_message(language))


class SessionCollection:
    """Authoritative ordered set of sessions, most recently created first.

    Callers only ever receive copies; mutation goes through the methods below.
    """

    def __init__(self, sessions: Iterable[ChatSession] | None = None) -> None:
        self._sessions: List[ChatSession] = [session.model_copy(deep=True) for session in sessions or []]

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return any(session.id == session_id for session in self._sessions)

    def __iter__(self) -> Iterator[ChatSession]:
        return iter(self.snapshot())

    def ids(self) -> List[str]:
        return [session.id for session in self._sessions]

    def snapshot(self) -> List[ChatSession]:
        return [session.model_copy(deep=True) for session in self._sessions]

    def replace_all(self, sessions: Iterable[ChatSession]) -> None:
        self._sessions = [session.model_copy(deep=True) for session in sessions]

    def get(self, session_id: str) -> Optional[ChatSession]:
        for session in self._sessions:
            if session.id == session_id:
                return session.model_copy(deep=True)
        return None

    def prepend(self, session: ChatSession) -> None:
        self._sessions.insert(0, session.model_copy(deep=True))

    def set_messages(self, session_id: str, messages: Iterable[Message]) -> bool:
        for session in self._sessions:
            if session.id == session_id:
                session.messages = [message.model_copy(deep=True) for message in messages]
                return True
        return False

    def remove(self, session_id: str) -> bool:
        before = len(self._sessions)
        self._sessions = [session for session in self._sessions if session.id != session_id]
        return len(self._sessions) != before


class Conversation:
    """The visible message list of the active session; the only live copy that gets mutated."""

    def __init__(self) -> None:
        self.active_session_id: Optional[str] = None
        self._messages: List[Message] = []
        self.version = 0

    @property
    def messages(self) -> List[Message]:
        return [message.model_copy(deep=True) for message in self._messages]

    def __len__(self) -> int:
        return len(self._messages)

    def _touch(self) -> None:
        self.version += 1

    def show(self, messages: Iterable[Message], session_id: Optional[str] = None) -> None:
        self._messages = [message.model_copy(deep=True) for message in messages]
        self.active_session_id = session_id
        self._touch()

    def show_intro(self, language: str) -> None:
        self.show([make_intro_message(language)], None)

    def find(self, message_id: str) -> Optional[Message]:
        for message in self._messages:
            if message.id == message_id:
                return message.model_copy(deep=True)
        return None

    def append(self, *messages: Message) -> None:
        self._messages.extend(message.model_copy(deep=True) for message in messages)
        self._touch()

    def update_message(
        self,
        message_id: str,
        *,
        content: Optional[str] = None,
        sources: Optional[List[Source]] = None,
    ) -> bool:
        for message in self._messages:
            if message.id == message_id:
                if content is not None:
                    message.content = content
                if sources is not None:
                    message.sources = [source.model_copy() for source in sources]
                self._touch()
                return True
        return False

    def remove_message(self, message_id: str) -> bool:
        before = len(self._messages)
        self._messages = [message for message in self._messages if message.id != message_id]
        if len(self._messages) != before:
            self._touch()
            return True
        return False

    def has_real_messages(self) -> bool:
        return any(not message.is_intro for message in self._messages)
