"""Custom exceptions for Script Agent."""


class ScriptAgentError(Exception):
    """Base exception for Script Agent."""

    pass


class ConfigurationError(ScriptAgentError):
    """Configuration-related errors."""

    pass


class TransportError(ScriptAgentError):
    """Transport-related errors."""

    pass


class SessionError(ScriptAgentError):
    """Session-related errors."""

    pass


class SessionNotFoundError(SessionError):
    """Session not found."""

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id
