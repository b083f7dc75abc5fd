"""Exception hierarchy and error classification for clawfleet.

Every error raised by the core derives from ClawfleetError and carries an
``error_type`` string from ErrorTypes. The retry layer uses that string to
decide whether an attempt is worth repeating.
"""

from typing import Any


class ErrorTypes:
    """Error classification constants."""

    CONNECTION_TIMEOUT = "connection_timeout"
    CONNECTION_REFUSED = "connection_refused"
    HOST_UNREACHABLE = "host_unreachable"
    AUTHENTICATION_FAILED = "authentication_failed"
    SESSION_ERROR = "session_error"
    CONFIGURATION = "configuration"
    POLICY = "policy"
    PARSE = "parse"
    NOT_FOUND = "not_found"
    INVALID_IDENTIFIER = "invalid_identifier"
    UNKNOWN = "unknown"


class ClawfleetError(Exception):
    """Base class for clawfleet errors.

    Attributes:
        msg: Human-readable error message
        error_type: One of the ErrorTypes constants
        details: Extra fields included in to_dict()
    """

    error_type: str = ErrorTypes.UNKNOWN

    def __init__(self, msg: str, error_type: str | None = None, **details: Any) -> None:
        super().__init__(msg)
        self.msg = msg
        if error_type is not None:
            self.error_type = error_type
        self.details = details

    def __str__(self) -> str:
        return self.msg

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {"error": self.msg, "error_type": self.error_type, **self.details}


class ConfigurationError(ClawfleetError):
    """No remote target (or other required setting) could be resolved."""

    error_type = ErrorTypes.CONFIGURATION


class TransportError(ClawfleetError):
    """The SSH or TCP layer failed before a command completed.

    error_type distinguishes timeouts, refused connections, unreachable
    hosts, authentication failures and broken sessions.
    """

    error_type = ErrorTypes.SESSION_ERROR


class PolicyViolation(ClawfleetError):
    """A command name is not on the allow-list or was denied by a rule."""

    error_type = ErrorTypes.POLICY

    def __init__(self, msg: str, command: str = "", **details: Any) -> None:
        super().__init__(msg, command=command, **details)
        self.command = command


class ParseError(ClawfleetError):
    """Remote output did not match any expected shape."""

    error_type = ErrorTypes.PARSE

    def __init__(self, msg: str, raw: str = "", **details: Any) -> None:
        super().__init__(msg, raw=raw[:200], **details)
        self.raw = raw


class MachineNotFoundError(ClawfleetError):
    """A machine id does not exist in the store."""

    error_type = ErrorTypes.NOT_FOUND


class InvalidIdentifierError(ClawfleetError, ValueError):
    """A device id cannot be made safe for use in a remote command."""

    error_type = ErrorTypes.INVALID_IDENTIFIER
