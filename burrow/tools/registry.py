"""Tool kinds, tool call records, and the registry that dispatches them."""

import asyncio
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from pydantic import BaseModel, model_validator

from burrow.exceptions import (
    BurrowError,
    ToolExecutionError,
    ToolNotFoundError,
)
from burrow.logging import get_logger
from burrow.store import SandboxStore

log = get_logger(__name__)


class ToolStatus(str, Enum):
    """Lifecycle of a parsed tool call."""

    PENDING = "pending"
    EXECUTING = "executing"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class ToolCall:
    """A tool invocation parsed out of model text.

    Only ``result`` and ``status`` change after parsing.
    """

    name: str
    parameters: dict[str, str]
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    result: str | None = None
    status: ToolStatus = ToolStatus.PENDING

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "parameters": dict(self.parameters),
            "result": self.result,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ToolCall":
        return cls(
            id=str(data.get("id") or uuid.uuid4()),
            name=str(data["name"]),
            parameters={str(k): str(v) for k, v in (data.get("parameters") or {}).items()},
            result=data.get("result"),
            status=ToolStatus(data.get("status", ToolStatus.PENDING.value)),
        )


class ToolResult(BaseModel):
    """Result from tool execution."""

    success: bool = True
    content: str = ""
    error: str | None = None

    @model_validator(mode="after")
    def _normalize_failure_error(self) -> "ToolResult":
        """Ensure failed results always provide an error message."""
        if not self.success and not (self.error or "").strip():
            fallback = (self.content or "").strip()
            self.error = fallback or "Tool execution failed"
        return self

    def as_feedback(self) -> str:
        """Text handed back to the model for this result."""
        return self.content if self.success else f"Error: {self.error}"


@dataclass(frozen=True)
class ToolSpec:
    """Parameter contract of one tool kind."""

    name: str
    description: str
    required: tuple[str, ...]
    optional: tuple[str, ...] = ()

    @property
    def usage(self) -> str:
        """Directive template, e.g. ``create_task|title=...|due=...``."""
        keys = [*self.required, *self.optional]
        return "|".join([self.name, *(f"{key}=..." for key in keys)])

    def missing(self, parameters: dict[str, str]) -> list[str]:
        return [key for key in self.required if key not in parameters]


TOOL_SPECS: dict[str, ToolSpec] = {
    spec.name: spec
    for spec in (
        ToolSpec("create_file", "Create a new file", ("path", "content")),
        ToolSpec("read_file", "Read a file's contents", ("path",)),
        ToolSpec("edit_file", "Replace an existing file's contents", ("path", "content")),
        ToolSpec("delete_file", "Delete a file", ("path",)),
        ToolSpec("list_files", "List files in a directory (use \".\" for root)", ("directory",)),
        ToolSpec("create_memory", "Save an important memory in memory/", ("title", "content")),
        ToolSpec(
            "create_task",
            "Create a task in tasks/ (due and details are optional)",
            ("title",),
            ("due", "details"),
        ),
        ToolSpec("search_files", "Search across all text and markdown files", ("query",)),
    )
}


class Tool(ABC):
    """Base class for tools acting on the sandboxed store."""

    name: str = ""
    timeout_seconds: float = 30.0

    def __init__(self, store: SandboxStore):
        self.store = store

    @property
    def spec(self) -> ToolSpec:
        return TOOL_SPECS[self.name]

    @abstractmethod
    def run(self, **params: str) -> str:
        """Perform the tool's effect synchronously and return status text."""

    async def execute(self, **kwargs: Any) -> ToolResult:
        """Run the tool off the event loop, mapping store failures to results."""
        params = {key: str(value) for key, value in kwargs.items() if not key.startswith("_")}
        try:
            content = await asyncio.to_thread(self.run, **params)
        except (BurrowError, OSError, UnicodeDecodeError) as e:
            log.warning("Tool failed", tool=self.name, error=str(e))
            return ToolResult(success=False, error=str(e))
        return ToolResult(success=True, content=content)

    def validate_arguments(self, arguments: dict[str, Any]) -> None:
        """Raise when a required parameter is missing."""
        for key in self.spec.missing(arguments):
            raise ToolExecutionError(self.name, f"Missing required argument: {key}")


class ToolRegistry:
    """Registry for managing available tools."""

    def __init__(self, store: SandboxStore):
        self.store = store
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        if not tool.name:
            raise ValueError("Tool must have a name")
        if tool.name not in TOOL_SPECS:
            raise ValueError(f"Unknown tool kind: {tool.name}")

        log.debug("Registering tool", tool=tool.name)
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> None:
        self._tools.pop(name, None)

    def get(self, name: str) -> Tool:
        """Get a tool by name.

        Raises:
            ToolNotFoundError if not found
        """
        if name not in self._tools:
            raise ToolNotFoundError(name)
        return self._tools[name]

    def list_tools(self) -> list[str]:
        return list(self._tools)

    def specs(self) -> dict[str, ToolSpec]:
        """Tool-kind table for the registered tools, used by the parser."""
        return {name: tool.spec for name, tool in self._tools.items()}

    @staticmethod
    async def _cancel_task(task: asyncio.Task[Any] | None) -> None:
        """Cancel task and await it to avoid pending task warnings."""
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def execute(
        self,
        name: str,
        arguments: dict[str, Any],
        abort_event: asyncio.Event | None = None,
    ) -> ToolResult:
        """Execute a tool by name.

        Raises:
            ToolNotFoundError if tool not found
            ToolExecutionError if execution fails, times out, or is aborted
        """
        tool = self.get(name)
        tool.validate_arguments(arguments)

        if abort_event is not None and abort_event.is_set():
            raise ToolExecutionError(name, "Execution aborted")

        execute_task: asyncio.Task[ToolResult] | None = None
        abort_wait_task: asyncio.Task[bool] | None = None
        try:
            log.info("Executing tool", tool=name, args=sorted(arguments))
            timeout_seconds = max(1.0, float(tool.timeout_seconds or 30.0))

            execute_task = asyncio.create_task(tool.execute(**arguments))
            waiters: set[asyncio.Task[Any]] = {execute_task}
            if abort_event is not None:
                abort_wait_task = asyncio.create_task(abort_event.wait())
                waiters.add(abort_wait_task)

            done, _ = await asyncio.wait(
                waiters,
                timeout=timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )

            if execute_task in done:
                result = await execute_task
                if not isinstance(result, ToolResult):
                    raise ToolExecutionError(name, "Tool returned invalid result payload")
                log.info("Tool executed", tool=name, success=result.success)
                return result

            if abort_wait_task is not None and abort_wait_task in done:
                await self._cancel_task(execute_task)
                raise ToolExecutionError(name, "Execution aborted")

            await self._cancel_task(execute_task)
            timeout_label = int(timeout_seconds) if timeout_seconds.is_integer() else timeout_seconds
            raise ToolExecutionError(name, f"Execution timed out after {timeout_label}s")
        except asyncio.CancelledError:
            await self._cancel_task(execute_task)
            raise
        except ToolExecutionError:
            raise
        except Exception as e:
            log.error("Tool execution failed", tool=name, error=str(e))
            raise ToolExecutionError(name, str(e))
        finally:
            await self._cancel_task(abort_wait_task)


def create_default_registry(store: SandboxStore) -> ToolRegistry:
    """Registry with every built-in tool kind bound to ``store``."""
    from burrow.tools.files import (
        CreateFileTool,
        DeleteFileTool,
        EditFileTool,
        ListFilesTool,
        ReadFileTool,
        SearchFilesTool,
    )
    from burrow.tools.notes import CreateMemoryTool, CreateTaskTool

    registry = ToolRegistry(store)
    for tool_cls in (
        CreateFileTool,
        ReadFileTool,
        EditFileTool,
        DeleteFileTool,
        ListFilesTool,
        CreateMemoryTool,
        CreateTaskTool,
        SearchFilesTool,
    ):
        registry.register(tool_cls(store))
    return registry
