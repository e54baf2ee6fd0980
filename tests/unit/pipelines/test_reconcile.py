import asyncio

from fiqh_assistant.pipelines.connectivity import ConnectivityState
from fiqh_assistant.pipelines.reconcile import SessionReconciler, merge_sessions
from fiqh_assistant.schemas.models import ChatSession, ConnectivityStatus, Message
from fiqh_assistant.utils.remote_store import InMemorySessionTable, MissingTableError, RemoteStoreError, session_to_row
from fiqh_assistant.utils.session import SessionCollection


def _session(session_id: str, content: str = "q", created: str = "2024-03-01T00:00:00+00:00") -> ChatSession:
    return ChatSession.model_validate(
        {
            "id": session_id,
            "title": f"{session_id} title",
            "messages": [Message(id=f"{session_id}-1", role="user", content=content).to_json_dict()],
            "createdAt": created,
        }
    )


def _reconciler(cache, remote):
    state = ConnectivityState()
    collection = SessionCollection()
    return SessionReconciler(cache, remote, state, collection), state, collection


def test_merge_prefers_remote_and_keeps_local_extras():
    remote = [_session("r1", "remote"), _session("shared", "remote copy")]
    local = [_session("shared", "local copy"), _session("l1", "local only"), _session("l1", "duplicate")]

    merged = merge_sessions(remote, local)

    assert [s.id for s in merged] == ["r1", "shared", "l1"]
    assert merged[1].messages[0].content == "remote copy"
    assert merged[2].messages[0].content == "local only"


def test_merge_is_idempotent():
    remote = [_session("a"), _session("b")]
    local = [_session("c"), _session("a")]
    once = merge_sessions(remote, local)
    twice = merge_sessions(remote, once)
    assert [s.id for s in twice] == [s.id for s in once]


def test_reconcile_connected_merges_and_writes_back(cache):
    cache.save_sessions([_session("local-only"), _session("shared", "stale")])
    remote = InMemorySessionTable(
        [
            session_to_row(_session("shared", "fresh", "2024-05-01T00:00:00+00:00")),
            session_to_row(_session("newer", "n", "2024-06-01T00:00:00+00:00")),
        ]
    )
    reconciler, state, collection = _reconciler(cache, remote)

    result = asyncio.run(reconciler.reconcile())

    assert result.status is ConnectivityStatus.CONNECTED
    assert state.is_connected
    assert collection.ids() == ["newer", "shared", "local-only"]
    assert collection.get("shared").messages[0].content == "fresh"
    assert [s.id for s in cache.load_sessions()] == ["newer", "shared", "local-only"]


def test_reconcile_missing_table_keeps_local(cache):
    cache.save_sessions([_session("l1")])
    remote = InMemorySessionTable()
    remote.fail_with = MissingTableError("Could not find the table 'public.chat_sessions'", code="PGRST205")
    reconciler, state, collection = _reconciler(cache, remote)

    result = asyncio.run(reconciler.reconcile())

    assert result.status is ConnectivityStatus.MISSING_TABLE
    assert state.setup_required
    assert collection.ids() == ["l1"]


def test_reconcile_error_mentioning_table_is_missing_table(cache):
    remote = InMemorySessionTable()
    remote.fail_with = RemoteStoreError('relation "public.chat_sessions" does not exist')
    reconciler, state, _ = _reconciler(cache, remote)

    assert asyncio.run(reconciler.reconcile()).status is ConnectivityStatus.MISSING_TABLE


def test_reconcile_transport_failure_is_offline(cache):
    cache.save_sessions([_session("l1")])
    remote = InMemorySessionTable()
    remote.fail_with = ConnectionError("network unreachable")
    reconciler, state, collection = _reconciler(cache, remote)

    result = asyncio.run(reconciler.reconcile())

    assert result.status is ConnectivityStatus.OFFLINE
    assert state.last_error == "network unreachable"
    assert collection.ids() == ["l1"]


def test_reconcile_without_remote_is_offline(cache):
    reconciler, state, collection = _reconciler(cache, None)
    result = asyncio.run(reconciler.reconcile())
    assert result.status is ConnectivityStatus.OFFLINE
    assert result.sessions == []
    assert len(collection) == 0


def test_reconcile_restores_active_session(cache):
    cache.save_sessions([_session("a"), _session("b", "second")])
    cache.save_active_session_id("b")
    reconciler, _, _ = _reconciler(cache, None)

    result = asyncio.run(reconciler.reconcile())

    assert result.active_session_id == "b"
    assert result.messages[0].content == "second"


def test_reconcile_ignores_unknown_active_session(cache):
    cache.save_sessions([_session("a")])
    cache.save_active_session_id("gone")
    reconciler, _, _ = _reconciler(cache, None)

    result = asyncio.run(reconciler.reconcile())

    assert result.active_session_id is None
    assert result.messages == []


def test_reconcile_with_corrupt_cache_starts_empty(store, cache):
    store.set("al_fiqh_local_sessions", "not-json")
    remote = InMemorySessionTable([session_to_row(_session("r1"))])
    reconciler, _, collection = _reconciler(cache, remote)

    result = asyncio.run(reconciler.reconcile())

    assert result.status is ConnectivityStatus.CONNECTED
    assert collection.ids() == ["r1"]
