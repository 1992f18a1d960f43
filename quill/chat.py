"""Conversation-facing operations that feed the generation orchestrator."""

import asyncio
from dataclasses import dataclass

from quill.config import Config
from quill.exceptions import ConversationNotFoundError, LLMError, MessageNotFoundError
from quill.instructions import InstructionLoader
from quill.llm import LLMProvider, Message
from quill.logging import get_logger
from quill.orchestrator import GenerationOrchestrator, GenerationRequest
from quill.routing import RoutingContext, select_model
from quill.scheduler import Scheduler
from quill.store import Conversation, SQLiteStore

log = get_logger(__name__)

TITLE_FALLBACK_CHARS = 30


def fallback_title(first_message: str) -> str:
    text = " ".join((first_message or "").split())
    if len(text) > TITLE_FALLBACK_CHARS:
        return text[:TITLE_FALLBACK_CHARS] + "..."
    return text or "New Conversation"


@dataclass
class SendResult:
    user_message_id: str
    assistant_message_id: str
    task: asyncio.Task[object]


class ChatService:
    """Insert messages, schedule generation runs and name conversations."""

    def __init__(
        self,
        store: SQLiteStore,
        scheduler: Scheduler,
        orchestrator: GenerationOrchestrator,
        provider: LLMProvider,
        config: Config,
        instructions: InstructionLoader | None = None,
    ):
        self.store = store
        self.scheduler = scheduler
        self.orchestrator = orchestrator
        self.provider = provider
        self.config = config
        self.instructions = instructions or InstructionLoader()

    async def create_conversation(self, owner: str = "local", **preferences: object) -> Conversation:
        return await self.store.create_conversation(owner=owner, **preferences)

    async def send_message(
        self,
        conversation_id: str,
        content: str,
        include_web_search: bool = False,
        timezone: str | None = None,
    ) -> SendResult:
        """Store the user message and an empty assistant placeholder, then schedule generation.

        Raises:
            ConversationNotFoundError if the conversation does not exist
            ValueError if the message is empty
        """
        text = (content or "").strip()
        if not text:
            raise ValueError("Message content is empty")

        conversation = await self.store.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)

        is_first = not any(m.role == "user" for m in await self.store.list_messages(conversation_id))

        user_message = await self.store.insert_message(conversation_id, "user", text)
        placeholder = await self.store.insert_message(
            conversation_id, "assistant", "", is_streaming=True
        )
        await self.store.touch_conversation(conversation_id)

        # The placeholder exists before the run is scheduled.
        task = self.start_generation(
            conversation_id,
            placeholder.id,
            include_web_search=include_web_search,
            timezone=timezone,
        )
        if is_first and not conversation.title:
            self.scheduler.enqueue(
                self.generate_title,
                {"conversation_id": conversation_id, "first_message": text},
            )

        log.info(
            "Message sent",
            conversation_id=conversation_id,
            message_id=placeholder.id,
            web_search=include_web_search,
        )
        return SendResult(
            user_message_id=user_message.id,
            assistant_message_id=placeholder.id,
            task=task,
        )

    def start_generation(
        self,
        conversation_id: str,
        message_id: str,
        include_web_search: bool = False,
        timezone: str | None = None,
    ) -> asyncio.Task[object]:
        """Fire-and-forget generation for an existing placeholder."""
        request = GenerationRequest(
            conversation_id=conversation_id,
            message_id=message_id,
            include_web_search=include_web_search,
            timezone=timezone,
        )
        return self.scheduler.enqueue(self.orchestrator.run, {"request": request})

    async def regenerate(self, message_id: str, timezone: str | None = None) -> asyncio.Task[object]:
        """Reset an assistant reply to an empty placeholder and generate it again.

        Raises:
            MessageNotFoundError if the message is missing or not an assistant reply
        """
        message = await self.store.get_message(message_id)
        if message is None or message.role != "assistant":
            raise MessageNotFoundError(message_id)

        await self.store.reset_for_regeneration(message_id)
        log.info("Regenerating message", message_id=message_id)
        return self.start_generation(message.conversation_id, message_id, timezone=timezone)

    async def generate_title(self, conversation_id: str, first_message: str) -> str:
        """Name a conversation with a short model-written title.

        Falls back to the truncated first message when no model answers.
        """
        selection = select_model(
            first_message,
            RoutingContext(is_title_generation=True),
            self.config.routing,
        )
        messages = [
            Message("system", self.instructions.load("title_system.md")),
            Message("user", first_message),
        ]
        params = {"temperature": 0.3, "max_tokens": 10}

        title = ""
        for model in selection.candidates:
            try:
                response = await self.provider.complete(model, messages, params)
            except LLMError as e:
                log.warning("Title generation failed", model=model, error=str(e))
                continue
            title = response.content.strip().strip("\"'").strip()
            if title:
                break

        if not title:
            title = fallback_title(first_message)
        await self.store.patch_conversation(conversation_id, title=title)
        log.info("Conversation titled", conversation_id=conversation_id, title=title)
        return title
