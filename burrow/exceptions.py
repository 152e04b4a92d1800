"""Custom exceptions for Burrow."""


class BurrowError(Exception):
    """Base exception for Burrow."""

    pass


class ConfigurationError(BurrowError):
    """Configuration-related errors."""

    pass


class SandboxError(BurrowError):
    """Sandboxed store errors."""

    pass


class SandboxPathError(SandboxError):
    """Requested path resolves outside the sandbox root."""

    def __init__(self, path: str):
        super().__init__(f"Path escapes sandbox: {path}")
        self.path = path


class NotFoundError(SandboxError):
    """Target of a store operation does not exist."""

    def __init__(self, message: str, path: str):
        super().__init__(message)
        self.path = path


class FileNotFoundInSandbox(NotFoundError):
    """File not found under the sandbox root."""

    def __init__(self, path: str):
        super().__init__(f"File not found: {path}", path)


class DirectoryNotFoundInSandbox(NotFoundError):
    """Directory not found under the sandbox root."""

    def __init__(self, path: str):
        super().__init__(f"Directory not found: {path}", path)


class ToolError(BurrowError):
    """Tool execution errors."""

    pass


class ToolExecutionError(ToolError):
    """Tool execution failed."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name


class ToolNotFoundError(ToolError):
    """Tool not found in registry."""

    def __init__(self, tool_name: str):
        super().__init__(f"Tool not found: {tool_name}")
        self.tool_name = tool_name


class GenerationError(BurrowError):
    """Generation port errors."""

    pass


class GenerationAPIError(GenerationError):
    """Inference backend returned an error (unavailable, bad status, etc.)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class SessionError(BurrowError):
    """Session-related errors."""

    pass


class SessionNotFoundError(SessionError):
    """Session not found."""

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id
