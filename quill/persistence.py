"""Throttled partial-content writes with a cooperative pause check."""

import time
from typing import Callable

from quill.exceptions import GenerationPaused, PersistenceWriteError, StaleMessageError
from quill.logging import get_logger
from quill.store import SQLiteStore

log = get_logger(__name__)


class PersistenceGate:
    """Single writer for one streaming message.

    Partial content is written when the length hits a multiple of
    ``flush_chars``, when ``flush_chars`` characters accumulated since the
    last write, when ``flush_interval`` seconds passed, or when forced.
    The conversation's pause flag is re-read before every write.
    """

    def __init__(
        self,
        store: SQLiteStore,
        message_id: str,
        conversation_id: str,
        version: int,
        flush_chars: int = 50,
        flush_interval: float = 1.0,
        pause_notice: str = "⏸️ Paused. Resume the conversation to continue.",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.message_id = message_id
        self.conversation_id = conversation_id
        self.version = version
        self.flush_chars = max(1, int(flush_chars))
        self.flush_interval = float(flush_interval)
        self.pause_notice = pause_notice
        self._clock = clock
        self._last_len = 0
        self._last_at = clock()
        self.writes = 0

    def _due(self, length: int, force: bool) -> bool:
        if length == self._last_len and not force:
            return False
        if force:
            return True
        if length % self.flush_chars == 0:
            return True
        if length - self._last_len >= self.flush_chars:
            return True
        return self.flush_interval > 0 and self._clock() - self._last_at >= self.flush_interval

    async def maybe_write(self, content: str, force: bool = False) -> bool:
        """Write partial content if the throttle allows it.

        Returns whether a write happened.

        Raises:
            GenerationPaused after writing the pause notice
            StaleMessageError if another run owns the message now
        """
        length = len(content)
        if length < self._last_len:
            log.debug("Skipping shorter partial write", message_id=self.message_id, length=length)
            return False
        if not self._due(length, force):
            return False

        await self.check_paused()
        if length == self._last_len:
            return False

        try:
            self.version = await self.store.update_streaming_content(
                self.message_id, content, self.version
            )
        except StaleMessageError:
            raise
        except PersistenceWriteError as e:
            log.warning("Partial write failed", message_id=self.message_id, error=str(e))
            return False

        self._last_len = length
        self._last_at = self._clock()
        self.writes += 1
        return True

    async def check_paused(self) -> None:
        """Stop the run if the conversation was paused.

        Raises:
            GenerationPaused once the pause notice has been written
        """
        conversation = await self.store.get_conversation(self.conversation_id)
        if conversation is None or not conversation.is_paused:
            return

        log.info("Conversation paused, stopping generation", message_id=self.message_id)
        try:
            await self.store.finalize_message(
                self.message_id,
                self.pause_notice,
                expected_version=self.version,
                bump_activity=False,
            )
        except PersistenceWriteError as e:
            log.error("Failed to write pause notice", message_id=self.message_id, error=str(e))
        raise GenerationPaused(self.message_id)
