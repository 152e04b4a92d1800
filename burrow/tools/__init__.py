"""Tools package for Burrow."""

from burrow.tools.registry import (
    TOOL_SPECS,
    Tool,
    ToolCall,
    ToolRegistry,
    ToolResult,
    ToolSpec,
    ToolStatus,
    create_default_registry,
)
from burrow.tools.parser import ToolCallParser
from burrow.tools.files import (
    CreateFileTool,
    DeleteFileTool,
    EditFileTool,
    ListFilesTool,
    ReadFileTool,
    SearchFilesTool,
)
from burrow.tools.notes import CreateMemoryTool, CreateTaskTool

__all__ = [
    "TOOL_SPECS",
    "Tool",
    "ToolCall",
    "ToolCallParser",
    "ToolRegistry",
    "ToolResult",
    "ToolSpec",
    "ToolStatus",
    "create_default_registry",
    "CreateFileTool",
    "ReadFileTool",
    "EditFileTool",
    "DeleteFileTool",
    "ListFilesTool",
    "SearchFilesTool",
    "CreateMemoryTool",
    "CreateTaskTool",
]
