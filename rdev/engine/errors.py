"""Exception hierarchy for the remote dev agent.

Specific exceptions for each failure mode. Protocol and handler
faults are converted to ``error`` messages at the server boundary;
client-side faults surface to the caller of ``request()``.
"""
from __future__ import annotations


class RemoteDevError(Exception):
    """Base exception for all remote dev errors."""


class ConfigError(RemoteDevError):
    """Required configuration is missing or invalid."""
    def __init__(self, missing: list[str] | None = None, reason: str = ""):
        self.missing = missing or []
        self.reason = reason
        if self.missing:
            msg = f"Missing required configuration: {', '.join(self.missing)}"
        else:
            msg = reason or "Invalid configuration"
        super().__init__(msg)


class ProtocolError(RemoteDevError):
    """A wire message could not be decoded or is not allowed."""


class InvalidPayloadError(RemoteDevError):
    """A handler payload is missing a field or has the wrong type."""
    def __init__(self, kind: str, field_name: str, reason: str = "is required"):
        self.kind = kind
        self.field_name = field_name
        super().__init__(f"{kind}: '{field_name}' {reason}")


class InvalidTargetError(RemoteDevError):
    """Owner or repository name is not a safe path component."""
    def __init__(self, owner: str, name: str):
        self.owner = owner
        self.name = name
        super().__init__(f"Invalid repository target: {owner!r}/{name!r}")


class TargetBusyError(RemoteDevError):
    """The target already has a running tool process."""
    def __init__(self, target: str):
        self.target = target
        super().__init__(f"A command is already running for {target}")


class RepositoryNotClonedError(RemoteDevError):
    """The target has no working copy yet."""
    def __init__(self, target: str):
        self.target = target
        super().__init__(f"Repository {target} is not cloned")


class ProcessError(RemoteDevError):
    """The external tool process could not be started."""
    def __init__(self, command: str, reason: str):
        self.command = command
        self.reason = reason
        super().__init__(f"Failed to start '{command}': {reason}")


class GitCommandError(RemoteDevError):
    """A git invocation exited non-zero."""
    def __init__(self, args: list[str], returncode: int, stderr: str):
        self.args_list = args
        self.returncode = returncode
        self.stderr = stderr
        detail = stderr.strip().splitlines()[-1] if stderr.strip() else ""
        super().__init__(
            f"git {' '.join(args)} failed (rc={returncode})"
            + (f": {detail}" if detail else "")
        )


class TransportError(RemoteDevError):
    """The client transport could not be opened or dropped."""


class NotConnectedError(TransportError):
    """A request was attempted while the transport is closed."""
    def __init__(self, kind: str = ""):
        self.kind = kind
        super().__init__("Not connected")


class AuthenticationError(RemoteDevError):
    """The server rejected the shared secret."""


class RequestError(RemoteDevError):
    """The server answered a request with an ``error`` message."""
    def __init__(self, kind: str, message: str):
        self.kind = kind
        self.message = message
        super().__init__(message)


class RequestTimeoutError(RemoteDevError):
    """No result or error arrived before the request timeout."""
    def __init__(self, kind: str, timeout_seconds: float):
        self.kind = kind
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Request '{kind}' timed out after {timeout_seconds}s"
        )
