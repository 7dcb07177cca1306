"""Remote Dev engine: process orchestration and repository state."""
from .models import (
    CommitRecord,
    CommitResult,
    ConversationTurn,
    ExecutionResult,
    Target,
    TurnRole,
)
from .config import AgentConfig, ClientConfig
from .errors import (
    AuthenticationError,
    ConfigError,
    GitCommandError,
    InvalidPayloadError,
    InvalidTargetError,
    NotConnectedError,
    ProcessError,
    ProtocolError,
    RemoteDevError,
    RepositoryNotClonedError,
    RequestError,
    RequestTimeoutError,
    TargetBusyError,
    TransportError,
)

__all__ = [
    # Engines (lazy import)
    "ProcessOrchestrator",
    "RepositoryManager",
    # Models
    "CommitRecord",
    "CommitResult",
    "ConversationTurn",
    "ExecutionResult",
    "Target",
    "TurnRole",
    # Config
    "AgentConfig",
    "ClientConfig",
    # YAML config (lazy import)
    "load_yaml_config",
    # Providers (lazy import)
    "Provider",
    "GeminiProvider",
    # Errors
    "AuthenticationError",
    "ConfigError",
    "GitCommandError",
    "InvalidPayloadError",
    "InvalidTargetError",
    "NotConnectedError",
    "ProcessError",
    "ProtocolError",
    "RemoteDevError",
    "RepositoryNotClonedError",
    "RequestError",
    "RequestTimeoutError",
    "TargetBusyError",
    "TransportError",
]


def __getattr__(name: str):
    if name == "ProcessOrchestrator":
        from .orchestrator import ProcessOrchestrator
        return ProcessOrchestrator
    if name == "RepositoryManager":
        from .repository import RepositoryManager
        return RepositoryManager
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    if name == "Provider":
        from .providers.base import Provider
        return Provider
    if name == "GeminiProvider":
        from .providers.gemini_provider import GeminiProvider
        return GeminiProvider
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
