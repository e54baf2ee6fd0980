from __future__ import annotations

from typing import Iterable, List, Optional

from fiqh_assistant.pipelines.connectivity import ConnectivityState
from fiqh_assistant.schemas.models import ChatSession, ConnectivityStatus, ReconcileResult
from fiqh_assistant.utils.local_cache import LocalCache
from fiqh_assistant.utils.logging import get_logger
from fiqh_assistant.utils.observability import get_metrics, time_phase
from fiqh_assistant.utils.remote_store import SessionTable, classify_remote_failure, row_to_session
from fiqh_assistant.utils.session import SessionCollection
from fiqh_assistant.utils.tracing import start_span

log = get_logger(__name__)


def _unique(sessions: Iterable[ChatSession], exclude: set[str]) -> List[ChatSession]:
    seen = set(exclude)
    unique: List[ChatSession] = []
    for session in sessions:
        if session.id in seen:
            continue
        seen.add(session.id)
        unique.append(session)
    return unique


def merge_sessions(remote: Iterable[ChatSession], local: Iterable[ChatSession]) -> List[ChatSession]:
    """Remote sessions first (authoritative for shared ids), then local-only sessions in local order."""

    merged = _unique(remote, set())
    return merged + _unique(local, {session.id for session in merged})


class SessionReconciler:
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

    async def _fetch_remote(self, remote: SessionTable) -> List[ChatSession]:
        rows = await remote.select_all_ordered()
        return [row_to_session(row) for row in rows]

    async def reconcile(self) -> ReconcileResult:
        local = self.cache.load_sessions()
        self.state.begin_reconciliation()
        error: str | None = None
        table = getattr(self.remote, "table", None)

        with start_span("sessions.reconcile", {"local.count": len(local), "remote.table": table}) as span:
            with time_phase(get_metrics(), "reconcile"):
                if self.remote is None:
                    status = ConnectivityStatus.OFFLINE
                    error = "remote store not configured"
                    sessions = local
                else:
                    try:
                        remote_sessions = await self._fetch_remote(self.remote)
                    except Exception as exc:
                        status = classify_remote_failure(exc, table or "")
                        error = str(exc)
                        sessions = local
                        log.warning(
                            "reconcile_remote_failed",
                            status=status.value,
                            error=error,
                            local_sessions=len(local),
                        )
                    else:
                        status = ConnectivityStatus.CONNECTED
                        sessions = merge_sessions(remote_sessions, local)
                        log.info(
                            "reconcile_merged",
                            remote_sessions=len(remote_sessions),
                            local_only=len(sessions) - len(remote_sessions),
                        )
            span.set_attribute("reconcile.status", status.value)
            span.set_attribute("reconcile.count", len(sessions))

        self.collection.replace_all(sessions)
        if sessions:
            self.cache.save_sessions(sessions)
        self.state.resolve(status, error)

        active_id = self.cache.load_active_session_id()
        active = self.collection.get(active_id) if active_id else None
        return ReconcileResult(
            sessions=self.collection.snapshot(),
            status=status,
            active_session_id=active.id if active else None,
            messages=active.messages if active else [],
        )
