"""Streaming generation orchestrator.

One run turns a conversation plus its assistant placeholder into a
finalized message:

    INIT -> ROUTING -> STREAMING_1 -> [TOOL_DETECTED -> EXECUTING -> STREAMING_2]
         -> FINALIZING -> DONE

FAILED is reachable from every non-terminal state and PAUSED from any
state that writes. ``run`` raises only ``CancelledError``; every error ends
in a terminal message write (or, for a stale or already closed placeholder, no write).
"""

import asyncio
import time
from contextlib import aclosing
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from quill.config import Config
from quill.exceptions import (
    GenerationPaused,
    PersistenceWriteError,
    ProviderConnectError,
    ProviderStreamError,
    StaleMessageError,
    ToolExecutionError,
    ToolValidationError,
)
from quill.instructions import InstructionLoader
from quill.llm import LLMProvider, Message, ToolDefinition
from quill.logging import bind_run_context, clear_run_context, get_logger
from quill.persistence import PersistenceGate
from quill.routing import ModelSelection, RoutingContext, select_model
from quill.search_augmentation import SearchAugmentation, SearchAugmenter
from quill.store import ChatMessage, Conversation, SQLiteStore
from quill.tool_detection import (
    NativeToolCallAccumulator,
    ToolInvocation,
    extract_fenced_invocation,
    strip_span,
    visible_text,
)
from quill.tools.registry import ToolRegistry

log = get_logger(__name__)

TOOL_FAILURE_NOTE = "⚠️ I couldn't finish the {label} step, so this reply is incomplete."
TOOL_INVALID_NOTE = "⚠️ I tried to use the {label} tool but the request was malformed."

MessageBuilder = Callable[[str], tuple[list[Message], list[ToolDefinition] | None]]


class GenerationState(str, Enum):
    INIT = "init"
    ROUTING = "routing"
    STREAMING_1 = "streaming_1"
    TOOL_DETECTED = "tool_detected"
    EXECUTING = "executing"
    STREAMING_2 = "streaming_2"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"
    PAUSED = "paused"


@dataclass
class GenerationRequest:
    """Ephemeral input of one generation run."""

    conversation_id: str
    message_id: str
    include_web_search: bool = False
    timezone: str | None = None


@dataclass
class GenerationOutcome:
    """What a run did, for callers and tests."""

    message_id: str
    state: GenerationState = GenerationState.INIT
    content: str = ""
    model: str | None = None
    tool_name: str | None = None
    error: str | None = None
    provider_calls: int = 0
    finalized: bool = False


@dataclass
class _PassResult:
    text: str
    model: str
    invocation: ToolInvocation | None = None
    interrupted: bool = False
    usage: dict[str, int] = field(default_factory=dict)


def _join(*parts: str) -> str:
    return "\n\n".join(part.strip() for part in parts if part and part.strip())


class GenerationOrchestrator:
    """Drive a single assistant message from placeholder to final content."""

    def __init__(
        self,
        store: SQLiteStore,
        provider: LLMProvider,
        tools: ToolRegistry,
        config: Config,
        augmenter: SearchAugmenter | None = None,
        instructions: InstructionLoader | None = None,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] | None = None,
    ):
        self.store = store
        self.provider = provider
        self.tools = tools
        self.config = config
        self.augmenter = augmenter
        self.instructions = instructions or InstructionLoader()
        self._clock = clock
        self._now = now or (lambda: datetime.now(UTC))

    async def run(self, request: GenerationRequest) -> GenerationOutcome:
        """Run generation for one placeholder message. Only cancellation propagates."""
        outcome = GenerationOutcome(message_id=request.message_id)
        bind_run_context(message_id=request.message_id, conversation_id=request.conversation_id)
        try:
            await self._run(request, outcome)
        except GenerationPaused:
            self._enter(outcome, GenerationState.PAUSED)
            outcome.content = self.config.streaming.pause_notice
            outcome.finalized = True
        except StaleMessageError as e:
            log.warning("Message taken over by another run, stopping", error=str(e))
            outcome.error = str(e)
            self._enter(outcome, GenerationState.FAILED)
        except asyncio.CancelledError:
            log.warning("Generation cancelled, closing message", state=outcome.state.value)
            outcome.error = "cancelled"
            await asyncio.shield(self._close_cancelled(request, outcome))
            raise
        except Exception as e:
            log.error("Generation failed", error=str(e), state=outcome.state.value, exc_info=True)
            outcome.error = str(e)
            await self._fail(request, outcome)
        finally:
            clear_run_context("message_id", "conversation_id")
        return outcome

    def _enter(self, outcome: GenerationOutcome, state: GenerationState) -> None:
        log.debug("Generation state", state=state.value)
        outcome.state = state

    async def _fail(self, request: GenerationRequest, outcome: GenerationOutcome) -> None:
        """Terminal error write; failures here are logged only."""
        self._enter(outcome, GenerationState.FAILED)
        notice = self.config.streaming.error_notice
        try:
            outcome.finalized = await self.store.finalize_message(
                request.message_id, notice, bump_activity=False
            )
        except PersistenceWriteError as e:
            log.error("Failed to write error notice", error=str(e))
            return
        outcome.content = notice

    async def _close_cancelled(self, request: GenerationRequest, outcome: GenerationOutcome) -> None:
        """Close a cancelled run's message with its partial text, or the error notice."""
        self._enter(outcome, GenerationState.FAILED)
        try:
            message = await self.store.get_message(request.message_id)
            if message is None or not message.is_streaming:
                return
            content = message.content.strip() or self.config.streaming.error_notice
            outcome.finalized = await self.store.finalize_message(
                request.message_id, content, bump_activity=False
            )
        except PersistenceWriteError as e:
            log.error("Failed to close cancelled message", error=str(e))
            return
        outcome.content = content

    async def _run(self, request: GenerationRequest, outcome: GenerationOutcome) -> None:
        self._enter(outcome, GenerationState.INIT)
        message = await self.store.get_message(request.message_id)
        if message is None:
            log.error("Message not found, nothing to generate")
            outcome.error = "message not found"
            self._enter(outcome, GenerationState.FAILED)
            return
        if not message.is_streaming:
            log.info("Message already finalized, skipping duplicate run")
            outcome.content = message.content
            self._enter(outcome, GenerationState.DONE)
            return

        conversation = await self.store.get_conversation(request.conversation_id)
        if conversation is None:
            log.error("Conversation not found, closing placeholder")
            outcome.error = "conversation not found"
            await self._fail(request, outcome)
            return

        gate = PersistenceGate(
            self.store,
            message.id,
            conversation.id,
            message.version,
            flush_chars=self.config.streaming.flush_chars,
            flush_interval=self.config.streaming.flush_interval,
            pause_notice=self.config.streaming.pause_notice,
            clock=self._clock,
        )
        await gate.check_paused()

        history = await self._history(message)
        prompt = next((m.content for m in reversed(history) if m.role == "user"), "")

        self._enter(outcome, GenerationState.ROUTING)
        selection = select_model(
            prompt,
            RoutingContext(
                preferred_model=conversation.model or "",
                temperature_override=conversation.temperature,
            ),
            self.config.routing,
        )
        log.info(
            "Model selected",
            model=selection.primary,
            task_class=selection.task_class.value,
            fallbacks=list(selection.fallbacks),
        )

        augmentation: SearchAugmentation | None = None
        if self.augmenter and self.augmenter.should_auto_search(prompt, request.include_web_search):
            try:
                augmentation = await self.augmenter.augment(prompt)
            except Exception as e:
                log.warning("Search augmentation failed, continuing without it", error=str(e))
        offer_tools = augmentation is None and bool(self.tools.list_tools())

        def build_first(model: str) -> tuple[list[Message], list[ToolDefinition] | None]:
            native = offer_tools and self.provider.supports_native_tools(model)
            capabilities = self._capabilities(native) if offer_tools else ""
            messages = [
                Message("system", self._system_prompt(conversation, request.timezone, capabilities)),
                *history,
            ]
            if augmentation is not None:
                messages.append(Message("system", augmentation.context))
            return messages, (self.tools.get_definitions() if native else None)

        self._enter(outcome, GenerationState.STREAMING_1)
        try:
            first = await self._stream_pass(
                selection, build_first, gate, outcome, prefix="", hide_fenced=offer_tools
            )
        except ProviderConnectError as e:
            log.error("All models refused the request", error=str(e))
            outcome.error = str(e)
            await self._fail(request, outcome)
            return

        fields: dict[str, Any] = {}
        if augmentation is not None:
            fields["search_results"] = augmentation.records()
            fields["has_web_search"] = True

        invocation = first.invocation
        if invocation is None and offer_tools and not first.interrupted:
            invocation = extract_fenced_invocation(first.text)

        if invocation is None:
            content = first.text.strip()
            await self._finalize(request, outcome, gate, selection, first, content, fields)
            return

        content, model_used, usage = await self._tool_path(
            request, outcome, gate, selection, conversation, history, first, invocation, fields
        )
        await self._finalize(
            request,
            outcome,
            gate,
            selection,
            _PassResult(text=content, model=model_used, usage=usage),
            content,
            fields,
        )

    async def _tool_path(
        self,
        request: GenerationRequest,
        outcome: GenerationOutcome,
        gate: PersistenceGate,
        selection: ModelSelection,
        conversation: Conversation,
        history: list[Message],
        first: _PassResult,
        invocation: ToolInvocation,
        fields: dict[str, Any],
    ) -> tuple[str, str, dict[str, int]]:
        """Execute the detected tool and run the follow-up pass.

        Returns the final content, the model that produced it and usage.
        """
        self._enter(outcome, GenerationState.TOOL_DETECTED)
        label = invocation.tool_name.replace("_", " ")
        pre_text = strip_span(first.text, invocation.span)
        log.info("Tool requested", tool=invocation.tool_name, source=invocation.source)

        try:
            args = self.tools.validate(invocation.tool_name, invocation.payload)
        except ToolValidationError as e:
            log.warning("Tool request rejected, keeping reply text", tool=invocation.tool_name, error=str(e))
            content = first.text.strip() or TOOL_INVALID_NOTE.format(label=label)
            return content, first.model, first.usage

        outcome.tool_name = invocation.tool_name
        await gate.maybe_write(pre_text, force=True)

        self._enter(outcome, GenerationState.EXECUTING)
        try:
            result = await self.tools.execute(invocation.tool_name, args)
        except ToolExecutionError as e:
            log.warning("Tool failed, skipping follow-up", tool=invocation.tool_name, error=e.reason)
            return _join(pre_text, TOOL_FAILURE_NOTE.format(label=label)), first.model, first.usage

        rendered = self.tools.render(invocation.tool_name, result)
        for key, value in rendered.message_patch.items():
            if key == "metadata" and isinstance(value, dict):
                fields.setdefault("metadata", {}).update(value)
            else:
                fields[key] = value
        base = _join(pre_text, rendered.content_fragment)
        await gate.maybe_write(base, force=True)

        followup = self.instructions.render(
            "tool_followup.md",
            tool_name=invocation.tool_name,
            tool_output=result.content or "(no textual output)",
        )

        def build_followup(model: str) -> tuple[list[Message], list[ToolDefinition] | None]:
            messages = [
                Message("system", self._system_prompt(conversation, request.timezone, "")),
                *history,
            ]
            if pre_text:
                messages.append(Message("assistant", pre_text))
            messages.append(Message("system", followup))
            return messages, None

        self._enter(outcome, GenerationState.STREAMING_2)
        try:
            second = await self._stream_pass(
                selection,
                build_followup,
                gate,
                outcome,
                prefix=f"{base}\n\n" if base else "",
                hide_fenced=False,
            )
        except ProviderConnectError as e:
            log.warning("Follow-up pass could not start, keeping tool output", error=str(e))
            return base, first.model, first.usage

        usage = dict(first.usage)
        for key, value in second.usage.items():
            usage[key] = usage.get(key, 0) + value
        return _join(base, second.text), second.model, usage

    async def _stream_pass(
        self,
        selection: ModelSelection,
        build: MessageBuilder,
        gate: PersistenceGate,
        outcome: GenerationOutcome,
        prefix: str,
        hide_fenced: bool,
    ) -> _PassResult:
        """Stream one pass, falling back through the selection's candidates.

        Raises:
            ProviderConnectError when no candidate produced any output
        """
        last_error: ProviderConnectError | None = None
        params = selection.generation_params()

        for model in selection.candidates:
            messages, tool_defs = build(model)
            accumulator = NativeToolCallAccumulator()
            usage: dict[str, int] = {}
            text = ""
            outcome.provider_calls += 1
            try:
                async with aclosing(self.provider.stream(model, messages, params, tool_defs)) as stream:
                    async for delta in stream:
                        accumulator.add(delta)
                        if delta.usage:
                            usage = dict(delta.usage)
                        if delta.text:
                            text += delta.text
                            shown = visible_text(text) if hide_fenced else text
                            await gate.maybe_write(prefix + shown)
            except ProviderConnectError as e:
                log.warning("Provider connect failed, trying next model", model=model, error=str(e))
                last_error = e
                continue
            except ProviderStreamError as e:
                if not text and not accumulator.has_calls:
                    log.warning("Stream failed before any output, trying next model", model=model, error=str(e))
                    last_error = ProviderConnectError(model, None, str(e))
                    continue
                log.warning("Stream interrupted, keeping partial text", model=model, error=str(e))
                return _PassResult(text=text, model=model, interrupted=True, usage=usage)

            outcome.model = model
            if model != selection.primary:
                log.info("Fallback model used", model=model, primary=selection.primary)
            return _PassResult(
                text=text,
                model=model,
                invocation=accumulator.first_invocation(),
                usage=usage,
            )

        raise last_error or ProviderConnectError(selection.primary, None, "no candidate models")

    async def _finalize(
        self,
        request: GenerationRequest,
        outcome: GenerationOutcome,
        gate: PersistenceGate,
        selection: ModelSelection,
        result: _PassResult,
        content: str,
        fields: dict[str, Any],
    ) -> None:
        if not content:
            log.warning("Provider returned an empty reply", model=result.model)
            outcome.error = "empty reply"
            await self._fail(request, outcome)
            return

        await gate.check_paused()

        self._enter(outcome, GenerationState.FINALIZING)
        metadata = dict(fields.pop("metadata", {}) or {})
        metadata.update({
            "task_class": selection.task_class.value,
            "fallback_used": result.model != selection.primary,
        })
        if outcome.tool_name:
            metadata["tool"] = outcome.tool_name
        fields["metadata"] = metadata
        fields["model"] = result.model
        fields["tokens"] = int(result.usage.get("total_tokens") or self.provider.count_tokens(content))

        outcome.finalized = await self.store.finalize_message(
            request.message_id,
            content,
            fields,
            expected_version=gate.version,
        )
        outcome.content = content
        outcome.model = result.model
        self._enter(outcome, GenerationState.DONE)
        log.info(
            "Generation finished",
            model=result.model,
            chars=len(content),
            provider_calls=outcome.provider_calls,
            finalized=outcome.finalized,
        )

    async def _history(self, target: ChatMessage) -> list[Message]:
        """Prior non-empty user/assistant messages, newest ``history_limit`` kept."""
        stored = await self.store.list_messages(target.conversation_id)
        history: list[Message] = []
        for item in stored:
            if item.id == target.id:
                break
            if item.role == "system" or item.is_streaming or not item.content.strip():
                continue
            history.append(Message(item.role, item.content))
        limit = max(0, int(self.config.streaming.history_limit))
        return history[-limit:] if limit else []

    def _capabilities(self, native: bool) -> str:
        template = "native_tools.md" if native else "tool_convention.md"
        return self.instructions.render(template, tool_list=self.tools.describe())

    def _system_prompt(self, conversation: Conversation, timezone: str | None, capabilities: str) -> str:
        prompt = self.instructions.render(
            "system_prompt.md",
            current_time=self._current_time(timezone),
            capabilities=capabilities,
        ).strip()
        override = (conversation.system_prompt or "").strip()
        return f"{override}\n\n{prompt}" if override else prompt

    def _current_time(self, timezone: str | None) -> str:
        zone = UTC
        for name in ((timezone or "").strip(), self.config.streaming.default_timezone):
            if not name:
                continue
            try:
                zone = ZoneInfo(name)
                break
            except (ZoneInfoNotFoundError, ValueError):
                log.warning("Unknown timezone", timezone=name)
        return self._now().astimezone(zone).strftime("%A, %B %d, %Y at %I:%M %p %Z")
