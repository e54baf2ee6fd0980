import asyncio

import pytest

from fiqh_assistant.agents.chat_agent import ChatEngine
from fiqh_assistant.schemas.models import ConnectivityStatus, StreamChunk
from fiqh_assistant.utils.local_cache import JsonFileKeyValueStore, LocalCache, MemoryKeyValueStore
from fiqh_assistant.utils.remote_store import MissingTableError


@pytest.mark.smoke
def test_offline_sessions_survive_restart(tmp_path, provider, output):
    path = tmp_path / "cache.json"

    async def first_run():
        engine = ChatEngine(LocalCache(JsonFileKeyValueStore(path)), None, provider, output_factory=lambda: output)
        await engine.start()
        assert engine.status is ConnectivityStatus.OFFLINE
        await engine.send("What invalidates wudu?")
        engine.set_voice("Ahmed")
        await engine.aclose()
        return engine.active_session_id

    async def second_run():
        engine = ChatEngine(LocalCache(JsonFileKeyValueStore(path)), None, provider, output_factory=lambda: output)
        await engine.start()
        try:
            return engine.active_session_id, engine.messages, engine.preferences
        finally:
            await engine.aclose()

    session_id = asyncio.run(first_run())
    restored_id, messages, preferences = asyncio.run(second_run())

    assert restored_id == session_id
    assert [m.role for m in messages] == ["assistant", "user", "assistant"]
    assert messages[-1].content == "Wudu is required."
    assert preferences.voice == "Ahmed"


@pytest.mark.smoke
def test_second_device_sees_synced_session(remote, provider, output):
    async def scenario():
        phone = ChatEngine(LocalCache(MemoryKeyValueStore()), remote, provider, output_factory=lambda: output)
        await phone.start()
        await phone.send("Is music permissible?")
        provider.chunks = [StreamChunk(text="Follow-up answer.")]
        await phone.send("What about nasheeds?")
        await phone.aclose()

        laptop = ChatEngine(LocalCache(MemoryKeyValueStore()), remote, provider, output_factory=lambda: output)
        await laptop.start()
        try:
            assert laptop.status is ConnectivityStatus.CONNECTED
            assert laptop.active_session_id is None
            session = laptop.sessions[0]
            assert session.id == phone.sessions[0].id
            assert session.title == "Is music permissible?..."
            assert [m.content for m in session.messages][-1] == "Follow-up answer."
            assert laptop.switch_session(session.id)
            assert len(laptop.messages) == 5
        finally:
            await laptop.aclose()

    asyncio.run(scenario())


@pytest.mark.smoke
def test_missing_table_then_recovery(cache, remote, provider, output):
    remote.fail_with = MissingTableError("Could not find the table 'public.chat_sessions'", code="PGRST205")

    async def scenario():
        engine = ChatEngine(cache, remote, provider, output_factory=lambda: output)
        await engine.start()
        assert engine.status_report().setup_required
        await engine.send("q")
        await engine.sync.flush()
        assert remote.rows == {}

        remote.fail_with = None
        assert await engine.reconnect() is ConnectivityStatus.CONNECTED

        await engine.send("follow up")
        await engine.aclose()
        return engine.active_session_id

    session_id = asyncio.run(scenario())

    # the first writes happened while the table was missing; later updates reach only existing rows
    assert session_id not in remote.rows
    assert [s.id for s in cache.load_sessions()] == [session_id]
    assert {call[0] for call in remote.calls if call[0] != "select"} == {"update"}
