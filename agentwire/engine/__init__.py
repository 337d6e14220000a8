"""Turn engine: spawn an agent CLI, tame its output, stream events."""
from .models import (
    CommandSpec,
    CommandStrategy,
    ErrorKind,
    ImageAttachment,
    ToolSettings,
    TurnRequest,
    TurnResult,
    TurnState,
)
from .config import AgentConfig
from .errors import (
    AgentWireError,
    DirectoryNotFoundError,
    NonZeroExitError,
    ProcessRuntimeError,
    ResponseTimeoutError,
    SessionBusyError,
    SpawnFailedError,
)

__all__ = [
    # Orchestration (lazy import to avoid circular deps)
    "TurnOrchestrator",
    "ProcessSupervisor",
    "CommandBuilder",
    "StreamClassifier",
    "OutputAggregator",
    # Models
    "CommandSpec",
    "CommandStrategy",
    "ErrorKind",
    "ImageAttachment",
    "ToolSettings",
    "TurnRequest",
    "TurnResult",
    "TurnState",
    # Config
    "AgentConfig",
    "load_yaml_config",
    # Errors
    "AgentWireError",
    "DirectoryNotFoundError",
    "NonZeroExitError",
    "ProcessRuntimeError",
    "ResponseTimeoutError",
    "SessionBusyError",
    "SpawnFailedError",
]


def __getattr__(name: str):
    if name == "TurnOrchestrator":
        from .orchestrator import TurnOrchestrator
        return TurnOrchestrator
    if name == "ProcessSupervisor":
        from .supervisor import ProcessSupervisor
        return ProcessSupervisor
    if name == "CommandBuilder":
        from .command_builder import CommandBuilder
        return CommandBuilder
    if name == "StreamClassifier":
        from .classifier import StreamClassifier
        return StreamClassifier
    if name == "OutputAggregator":
        from .aggregator import OutputAggregator
        return OutputAggregator
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
