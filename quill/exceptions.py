"""Custom exceptions for Quill."""


class QuillError(Exception):
    """Base exception for Quill."""

    pass


class ConfigurationError(QuillError):
    """Configuration-related errors."""

    pass


class NotFoundError(QuillError):
    """A record the generation run depends on does not exist."""

    pass


class MessageNotFoundError(NotFoundError):
    """Message not found."""

    def __init__(self, message_id: str):
        super().__init__(f"Message not found: {message_id}")
        self.message_id = message_id


class ConversationNotFoundError(NotFoundError):
    """Conversation not found."""

    def __init__(self, conversation_id: str):
        super().__init__(f"Conversation not found: {conversation_id}")
        self.conversation_id = conversation_id


class LLMError(QuillError):
    """LLM-related errors."""

    pass


class ProviderConnectError(LLMError):
    """Provider refused the request before any delta was delivered."""

    def __init__(self, model: str, status_code: int | None = None, body: str = ""):
        detail = f"HTTP {status_code}" if status_code is not None else "connection failed"
        if body:
            detail = f"{detail}: {body[:300]}"
        super().__init__(f"Provider connect error for '{model}': {detail}")
        self.model = model
        self.status_code = status_code
        self.body = body


class ProviderStreamError(LLMError):
    """Transport failed after the stream was opened."""

    def __init__(self, model: str, message: str):
        super().__init__(f"Provider stream error for '{model}': {message}")
        self.model = model


class ToolError(QuillError):
    """Tool errors."""

    pass


class ToolValidationError(ToolError):
    """Tool arguments did not match the tool's schema."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Invalid arguments for tool '{tool_name}': {message}")
        self.tool_name = tool_name


class ToolExecutionError(ToolError):
    """Tool execution failed."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name
        self.reason = message


class ToolNotFoundError(ToolValidationError):
    """Tool not found in registry."""

    def __init__(self, tool_name: str):
        super().__init__(tool_name, "unknown tool")
        self.tool_name = tool_name


class SearchProviderUnavailable(QuillError):
    """Search provider is disabled or unreachable."""

    pass


class PersistenceWriteError(QuillError):
    """Backing store write failed."""

    pass


class StaleMessageError(PersistenceWriteError):
    """Another writer changed the message since it was checked out."""

    def __init__(self, message_id: str, expected_version: int):
        super().__init__(
            f"Message {message_id} changed since version {expected_version}"
        )
        self.message_id = message_id
        self.expected_version = expected_version


class GenerationPaused(QuillError):
    """Raised by the persistence gate once the pause notice is written."""

    def __init__(self, message_id: str):
        super().__init__(f"Generation paused for message {message_id}")
        self.message_id = message_id
