from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, List, Literal, Optional

from fiqh_assistant.pipelines.connectivity import ConnectivityState
from fiqh_assistant.schemas.models import ChatSession, Message
from fiqh_assistant.utils.local_cache import LocalCache
from fiqh_assistant.utils.logging import get_logger
from fiqh_assistant.utils.observability import get_metrics
from fiqh_assistant.utils.remote_store import SessionTable, messages_to_rows, session_to_row
from fiqh_assistant.utils.session import Conversation, SessionCollection, new_id
from fiqh_assistant.utils.translations import derive_title

log = get_logger(__name__)

OperationKind = Literal["insert", "update", "delete"]


@dataclass
class RemoteOperation:
    kind: OperationKind
    session_id: str
    payload: Optional[Dict[str, Any]] = None


class SyncPropagator:
    """Single writer that mirrors session mutations to the local cache and the remote store.

    The local write happens synchronously before any remote attempt. Remote writes run
    in the background, serialized per session id; consecutive pending updates for one
    session collapse into the latest one.
    """

    def __init__(
        self,
        cache: LocalCache,
        remote: Optional[SessionTable],
        state: ConnectivityState,
        collection: SessionCollection,
    ) -> None:
        self.cache = cache
        self.remote = remote
        self.state = state
        self.collection = collection
        self._queues: Dict[str, Deque[RemoteOperation]] = {}
        self._workers: Dict[str, asyncio.Task[None]] = {}

    @property
    def pending(self) -> int:
        return sum(len(queue) for queue in self._queues.values())

    def _persist_local(self) -> None:
        self.cache.save_sessions(self.collection.snapshot())

    def messages_changed(self, conversation: Conversation) -> bool:
        session_id = conversation.active_session_id
        if not session_id or not conversation.has_real_messages():
            return False
        messages: List[Message] = conversation.messages
        if not self.collection.set_messages(session_id, messages):
            log.warning("sync_unknown_session", session_id=session_id)
            return False
        self._persist_local()
        if self.state.is_connected:
            self._enqueue(RemoteOperation("update", session_id, {"messages": messages_to_rows(messages)}))
        return True

    def create_session(self, prompt: str, initial_messages: List[Message]) -> ChatSession:
        session = ChatSession(id=new_id(), title=derive_title(prompt), messages=initial_messages)
        self.collection.prepend(session)
        self._persist_local()
        log.info("session_created", session_id=session.id, remote=self.state.is_connected)
        if self.state.is_connected:
            self._enqueue(RemoteOperation("insert", session.id, session_to_row(session)))
        return session

    def delete_session(self, session_id: str) -> bool:
        removed = self.collection.remove(session_id)
        if not removed:
            return False
        self._persist_local()
        queue = self._queues.get(session_id)
        if queue:
            queue.clear()
        if self.state.is_connected:
            self._enqueue(RemoteOperation("delete", session_id))
        return True

    def _enqueue(self, operation: RemoteOperation) -> None:
        queue = self._queues.setdefault(operation.session_id, deque())
        if operation.kind == "update" and queue and queue[-1].kind == "update":
            queue[-1] = operation
            get_metrics().increment_counter("sync_remote::coalesced")
        else:
            queue.append(operation)
        worker = self._workers.get(operation.session_id)
        if worker is None or worker.done():
            self._workers[operation.session_id] = asyncio.get_running_loop().create_task(
                self._drain(operation.session_id),
                name=f"sync:{operation.session_id}",
            )

    async def _drain(self, session_id: str) -> None:
        queue = self._queues[session_id]
        try:
            while queue:
                operation = queue.popleft()
                remote = self.remote
                if not self.state.is_connected or remote is None:
                    log.debug("sync_remote_skipped", session_id=session_id, kind=operation.kind)
                    continue
                await self._deliver(remote, operation)
        finally:
            if not queue:
                self._queues.pop(session_id, None)
            self._workers.pop(session_id, None)

    async def _deliver(self, remote: SessionTable, operation: RemoteOperation) -> None:
        metrics = get_metrics()
        try:
            if operation.kind == "insert":
                await remote.insert(operation.payload or {})
            elif operation.kind == "update":
                await remote.update(operation.session_id, operation.payload or {})
            else:
                await remote.delete(operation.session_id)
        except Exception as exc:
            metrics.increment_counter(f"sync_remote::{operation.kind}_failed")
            log.warning(
                f"sync_remote_{operation.kind}_failed",
                session_id=operation.session_id,
                error=str(exc),
            )
            self.state.demote(f"{operation.kind} failed: {exc}")
            return
        metrics.increment_counter(f"sync_remote::{operation.kind}_ok")

    async def flush(self) -> None:
        """Wait until every queued remote write has been attempted."""

        while self._workers:
            await asyncio.gather(*list(self._workers.values()), return_exceptions=True)
