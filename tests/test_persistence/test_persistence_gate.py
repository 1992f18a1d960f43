import pytest

from quill.exceptions import GenerationPaused, PersistenceWriteError, StaleMessageError
from quill.persistence import PersistenceGate
from quill.store import SQLiteStore

PAUSE = "⏸️ Paused. Resume the conversation to continue."


class _Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


async def _setup(tmp_path, **gate_kwargs):
    store = SQLiteStore(tmp_path / "quill.db")
    conversation = await store.create_conversation()
    placeholder = await store.insert_message(conversation.id, "assistant", is_streaming=True)
    gate = PersistenceGate(
        store,
        placeholder.id,
        conversation.id,
        placeholder.version,
        pause_notice=PAUSE,
        **gate_kwargs,
    )
    return store, conversation, placeholder, gate


@pytest.mark.asyncio
async def test_writes_follow_character_threshold(tmp_path):
    clock = _Clock()
    store, _, placeholder, gate = await _setup(tmp_path, flush_chars=10, flush_interval=0, clock=clock)
    try:
        assert await gate.maybe_write("abc") is False
        assert await gate.maybe_write("abcdefghij") is True  # multiple of K
        assert await gate.maybe_write("abcdefghijk") is False
        assert await gate.maybe_write("abcdefghijk" + "x" * 10) is True  # K added since last write
        assert await gate.maybe_write("abcdefghijk" + "x" * 11, force=True) is True
        assert gate.writes == 3

        message = await store.get_message(placeholder.id)
        assert message.content == "abcdefghijk" + "x" * 11
        assert message.version == gate.version
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_interval_elapsed_triggers_write(tmp_path):
    clock = _Clock()
    store, _, _, gate = await _setup(tmp_path, flush_chars=50, flush_interval=1.0, clock=clock)
    try:
        assert await gate.maybe_write("hi") is False
        clock.now = 1.5
        assert await gate.maybe_write("hi!") is True
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_shorter_content_is_never_written(tmp_path):
    store, _, placeholder, gate = await _setup(tmp_path, flush_chars=5)
    try:
        assert await gate.maybe_write("hello world", force=True) is True
        assert await gate.maybe_write("hello", force=True) is False
        assert (await store.get_message(placeholder.id)).content == "hello world"
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_pause_replaces_partial_with_notice(tmp_path):
    store, conversation, placeholder, gate = await _setup(tmp_path, flush_chars=5)
    try:
        await gate.maybe_write("hello", force=True)
        await store.set_paused(conversation.id, True)

        with pytest.raises(GenerationPaused):
            await gate.maybe_write("hello world", force=True)

        message = await store.get_message(placeholder.id)
        assert message.content == PAUSE
        assert message.is_streaming is False
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_stale_version_propagates(tmp_path):
    store, _, placeholder, gate = await _setup(tmp_path, flush_chars=5)
    try:
        await store.update_streaming_content(placeholder.id, "another run", placeholder.version)

        with pytest.raises(StaleMessageError):
            await gate.maybe_write("mine!", force=True)
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_partial_write_failure_is_logged_not_raised(tmp_path, monkeypatch):
    store, _, _, gate = await _setup(tmp_path, flush_chars=5)

    async def _broken(*args, **kwargs):
        raise PersistenceWriteError("disk full")

    monkeypatch.setattr(store, "update_streaming_content", _broken)
    try:
        assert await gate.maybe_write("hello", force=True) is False
        assert gate.writes == 0
    finally:
        await store.close()
