"""Provider registry and protocol adapters."""

from .base import (
    AdapterResult,
    BaseAdapter,
    ConfigurationError,
    LLMException,
    ProtocolError,
    RateLimitSnapshot,
    StructuredOutputError,
    TransportError,
    Usage,
)
from .agent import AgentAdapter, AgentBackend
from .claude import ClaudeAdapter
from .cli import CliAdapter, CliHooks, CliRunner
from .credentials import CredentialsManager
from .gemini import GeminiAdapter
from .registry import (
    AgentProvider,
    CliProvider,
    CliStyle,
    HttpProvider,
    ModelSelection,
    ProtocolKind,
    ProviderFamily,
    ProviderRegistry,
    SessionProvider,
)
from .router import AdapterRouter
from .session import ProcessSessionHost, SessionAdapter, SessionHost

__all__ = [
    "AdapterResult",
    "BaseAdapter",
    "ConfigurationError",
    "LLMException",
    "ProtocolError",
    "RateLimitSnapshot",
    "StructuredOutputError",
    "TransportError",
    "Usage",
    "AgentAdapter",
    "AgentBackend",
    "ClaudeAdapter",
    "CliAdapter",
    "CliHooks",
    "CliRunner",
    "CredentialsManager",
    "GeminiAdapter",
    "AgentProvider",
    "CliProvider",
    "CliStyle",
    "HttpProvider",
    "ModelSelection",
    "ProtocolKind",
    "ProviderFamily",
    "ProviderRegistry",
    "SessionProvider",
    "AdapterRouter",
    "ProcessSessionHost",
    "SessionAdapter",
    "SessionHost",
]
