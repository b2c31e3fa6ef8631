"""Custom exceptions for Nimbus."""


class NimbusError(Exception):
    """Base exception for Nimbus."""

    pass


class ConfigurationError(NimbusError):
    """Configuration-related errors."""

    pass


class StorageError(NimbusError):
    """Persistence errors."""

    pass


class SessionNotFoundError(StorageError):
    """Session not found."""

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class EngineError(NimbusError):
    """Agent engine failures (provider errors, aborted runs, etc.)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ToolError(NimbusError):
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


class CredentialRefreshError(NimbusError):
    """OAuth token refresh was rejected or could not be completed."""

    def __init__(self, provider_key: str, message: str):
        super().__init__(f"Credential refresh for '{provider_key}' failed: {message}")
        self.provider_key = provider_key
