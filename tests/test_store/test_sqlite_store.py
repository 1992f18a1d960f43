import pytest

from quill.exceptions import PersistenceWriteError, StaleMessageError
from quill.store import SQLiteStore


@pytest.mark.asyncio
async def test_store_uses_db_path_and_round_trips_conversation(tmp_path):
    db_path = tmp_path / "nested" / "quill.db"
    store = SQLiteStore(db_path)
    try:
        conversation = await store.create_conversation(
            owner="user-1", model="openai/gpt-4o", system_prompt="Be brief.", temperature=0.4
        )
        assert db_path.exists()

        loaded = await store.get_conversation(conversation.id)
        assert loaded is not None
        assert loaded.owner == "user-1"
        assert loaded.model == "openai/gpt-4o"
        assert loaded.system_prompt == "Be brief."
        assert loaded.temperature == 0.4
        assert loaded.is_paused is False

        await store.set_paused(conversation.id, True)
        assert (await store.get_conversation(conversation.id)).is_paused is True
        assert await store.get_conversation("missing") is None
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_patch_conversation_rejects_unknown_fields(tmp_path):
    store = SQLiteStore(tmp_path / "quill.db")
    try:
        conversation = await store.create_conversation()
        with pytest.raises(ValueError):
            await store.patch_conversation(conversation.id, owner="someone-else")
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_streaming_writes_are_compare_and_set(tmp_path):
    store = SQLiteStore(tmp_path / "quill.db")
    try:
        conversation = await store.create_conversation()
        placeholder = await store.insert_message(conversation.id, "assistant", is_streaming=True)
        assert placeholder.version == 0

        version = await store.update_streaming_content(placeholder.id, "Hel", 0)
        version = await store.update_streaming_content(placeholder.id, "Hello", version)
        assert version == 2

        with pytest.raises(StaleMessageError):
            await store.update_streaming_content(placeholder.id, "stale", 0)

        message = await store.get_message(placeholder.id)
        assert message.content == "Hello"
        assert message.is_streaming is True
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_finalize_is_idempotent_and_bumps_activity(tmp_path):
    store = SQLiteStore(tmp_path / "quill.db")
    try:
        conversation = await store.create_conversation()
        placeholder = await store.insert_message(conversation.id, "assistant", is_streaming=True)

        closed = await store.finalize_message(
            placeholder.id,
            "Final answer",
            {
                "search_results": [{"title": "T", "link": "https://a.example", "snippet": "", "displayLink": "a.example"}],
                "has_web_search": True,
                "metadata": {"task_class": "general"},
                "model": "openai/gpt-4o",
                "tokens": 42,
            },
        )
        again = await store.finalize_message(placeholder.id, "Overwrite attempt")

        assert closed is True
        assert again is False

        message = await store.get_message(placeholder.id)
        assert message.content == "Final answer"
        assert message.is_streaming is False
        assert message.has_web_search is True
        assert message.search_results[0]["displayLink"] == "a.example"
        assert message.metadata == {"task_class": "general"}
        assert message.tokens == 42

        refreshed = await store.get_conversation(conversation.id)
        assert refreshed.last_activity_at >= conversation.last_activity_at

        with pytest.raises(StaleMessageError):
            await store.update_streaming_content(placeholder.id, "late partial", message.version)
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_finalize_reports_closed_when_activity_bump_fails(tmp_path, monkeypatch):
    store = SQLiteStore(tmp_path / "quill.db")
    try:
        conversation = await store.create_conversation()
        placeholder = await store.insert_message(conversation.id, "assistant", is_streaming=True)

        async def _locked(conversation_id: str):
            raise PersistenceWriteError("database is locked")

        monkeypatch.setattr(store, "touch_conversation", _locked)

        assert await store.finalize_message(placeholder.id, "Final answer") is True
        message = await store.get_message(placeholder.id)
        assert message.content == "Final answer"
        assert message.is_streaming is False
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_finalize_with_outdated_version_is_skipped(tmp_path):
    store = SQLiteStore(tmp_path / "quill.db")
    try:
        conversation = await store.create_conversation()
        placeholder = await store.insert_message(conversation.id, "assistant", is_streaming=True)
        await store.update_streaming_content(placeholder.id, "partial", 0)

        assert await store.finalize_message(placeholder.id, "old run", expected_version=0) is False
        assert (await store.get_message(placeholder.id)).is_streaming is True
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_only_one_open_assistant_message_per_conversation(tmp_path):
    store = SQLiteStore(tmp_path / "quill.db")
    try:
        conversation = await store.create_conversation()
        await store.insert_message(conversation.id, "assistant", is_streaming=True)

        with pytest.raises(PersistenceWriteError):
            await store.insert_message(conversation.id, "assistant", is_streaming=True)

        other = await store.create_conversation()
        await store.insert_message(other.id, "assistant", is_streaming=True)
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_list_messages_keeps_order_and_limit(tmp_path):
    store = SQLiteStore(tmp_path / "quill.db")
    try:
        conversation = await store.create_conversation()
        for idx in range(4):
            await store.insert_message(conversation.id, "user", f"message {idx}")

        messages = await store.list_messages(conversation.id)
        assert [m.content for m in messages] == ["message 0", "message 1", "message 2", "message 3"]

        newest = await store.list_messages(conversation.id, limit=2)
        assert [m.content for m in newest] == ["message 2", "message 3"]
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_reset_for_regeneration_reopens_assistant_message(tmp_path):
    store = SQLiteStore(tmp_path / "quill.db")
    try:
        conversation = await store.create_conversation()
        user = await store.insert_message(conversation.id, "user", "hi")
        reply = await store.insert_message(conversation.id, "assistant", is_streaming=True)
        await store.finalize_message(reply.id, "Hello!", {"has_document": True})

        reset = await store.reset_for_regeneration(reply.id)

        assert reset.content == ""
        assert reset.is_streaming is True
        assert reset.has_document is False
        assert reset.version > reply.version

        with pytest.raises(PersistenceWriteError):
            await store.reset_for_regeneration(user.id)
    finally:
        await store.close()
