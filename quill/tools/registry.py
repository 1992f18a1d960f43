"""Tool registry and base tool class."""

import asyncio
import json
from abc import ABC, abstractmethod
from typing import Any, ClassVar

from pydantic import BaseModel, Field, ValidationError, model_validator

from quill.exceptions import ToolExecutionError, ToolNotFoundError, ToolValidationError
from quill.llm import ToolDefinition
from quill.logging import get_logger

log = get_logger(__name__)


def _normalize_tool_name(value: str) -> str:
    return str(value or "").strip().lower()


class ToolResult(BaseModel):
    """Result from tool execution.

    ``content`` is the textual result handed back to the model on the
    follow-up pass; ``data`` carries structured output used for rendering.
    """

    success: bool = True
    content: str = ""
    error: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _normalize_failure_error(self) -> "ToolResult":
        """Ensure failed results always provide an error message."""
        if not self.success and not (self.error or "").strip():
            fallback = (self.content or "").strip()
            self.error = fallback or "Tool execution failed"
        return self


class ToolRender(BaseModel):
    """What a successful tool contributes to the assistant message."""

    content_fragment: str = ""
    message_patch: dict[str, Any] = Field(default_factory=dict)


class Tool(ABC):
    """Base class for all tools."""

    name: ClassVar[str] = ""
    description: ClassVar[str] = ""
    args_model: ClassVar[type[BaseModel]]
    timeout_seconds: float = 30.0

    @property
    def parameters(self) -> dict[str, Any]:
        """JSON schema of the argument model."""
        return self.args_model.model_json_schema()

    def get_definition(self) -> ToolDefinition:
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=self.parameters,
        )

    def parse_arguments(self, raw: dict[str, Any] | str | None) -> BaseModel:
        """Validate untrusted arguments against the tool's schema.

        Raises:
            ToolValidationError if the payload is not an object or does not validate
        """
        payload: Any = raw
        if isinstance(raw, str):
            try:
                payload = json.loads(raw) if raw.strip() else {}
            except json.JSONDecodeError as e:
                raise ToolValidationError(self.name, f"arguments are not valid JSON: {e}") from e
        if payload is None:
            payload = {}
        if not isinstance(payload, dict):
            raise ToolValidationError(self.name, "arguments must be an object")
        try:
            return self.args_model.model_validate(payload)
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'arguments'}: {err['msg']}"
                for err in e.errors()
            )
            raise ToolValidationError(self.name, problems) from e

    @abstractmethod
    async def execute(self, args: BaseModel) -> ToolResult:
        """Execute the tool with validated arguments."""
        pass

    def render(self, result: ToolResult) -> ToolRender:
        """Turn a successful result into message content and fields."""
        return ToolRender()

    def status_line(self, args: BaseModel) -> str:
        """Short description of the running tool, used in logs."""
        return f"Running {self.name}"

    async def close(self) -> None:
        return None


class ToolRegistry:
    """Registry for managing available tools."""

    def __init__(self):
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        """Register a tool.

        Args:
            tool: Tool instance to register
        """
        if not tool.name:
            raise ValueError("Tool must have a name")

        log.debug("Registering tool", tool=tool.name)
        self._tools[_normalize_tool_name(tool.name)] = tool

    def unregister(self, name: str) -> None:
        self._tools.pop(_normalize_tool_name(name), None)

    def has_tool(self, name: str) -> bool:
        return _normalize_tool_name(name) in self._tools

    def get(self, name: str) -> Tool:
        """Get a tool by name.

        Raises:
            ToolNotFoundError if not found
        """
        key = _normalize_tool_name(name)
        if key not in self._tools:
            raise ToolNotFoundError(name)
        return self._tools[key]

    def list_tools(self) -> list[str]:
        return [tool.name for tool in self._tools.values()]

    def get_definitions(self) -> list[ToolDefinition]:
        """Get all tool definitions for the LLM."""
        return [tool.get_definition() for tool in self._tools.values()]

    def describe(self) -> str:
        """Bullet list of tools with their argument names, for prompts."""
        lines: list[str] = []
        for tool in self._tools.values():
            properties = tool.parameters.get("properties", {})
            required = set(tool.parameters.get("required", []))
            args = ", ".join(
                f"{arg}{'' if arg in required else '?'}" for arg in properties
            )
            lines.append(f"- `{tool.name}({args})`: {tool.description}")
        return "\n".join(lines)

    def validate(self, name: str, arguments: dict[str, Any] | str | None) -> BaseModel:
        """Resolve the tool and validate its arguments.

        Raises:
            ToolNotFoundError / ToolValidationError
        """
        return self.get(name).parse_arguments(arguments)

    async def execute(self, name: str, args: BaseModel) -> ToolResult:
        """Execute a tool with validated arguments.

        Raises:
            ToolNotFoundError if tool not found
            ToolExecutionError if execution fails, times out or reports failure
        """
        tool = self.get(name)
        timeout_seconds = max(1.0, float(tool.timeout_seconds or 30.0))

        try:
            log.info("Executing tool", tool=tool.name, status=tool.status_line(args))
            result = await asyncio.wait_for(tool.execute(args), timeout=timeout_seconds)
        except asyncio.TimeoutError as e:
            label = int(timeout_seconds) if timeout_seconds.is_integer() else timeout_seconds
            raise ToolExecutionError(tool.name, f"Execution timed out after {label}s") from e
        except ToolExecutionError:
            raise
        except Exception as e:
            log.error("Tool execution failed", tool=tool.name, error=str(e))
            raise ToolExecutionError(tool.name, str(e)) from e

        if not isinstance(result, ToolResult):
            raise ToolExecutionError(tool.name, "Tool returned invalid result payload")
        if not result.success:
            raise ToolExecutionError(tool.name, result.error or "Tool execution failed")

        log.info("Tool executed", tool=tool.name)
        return result

    def render(self, name: str, result: ToolResult) -> ToolRender:
        return self.get(name).render(result)

    async def close(self) -> None:
        for tool in self._tools.values():
            await tool.close()
