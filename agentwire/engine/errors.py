"""Exception hierarchy for the turn pipeline.

One exception per failure mode. Each carries a ``kind`` that is
forwarded verbatim as the ``kind`` of the outbound error event.
"""
from __future__ import annotations

from .models import ErrorKind


class AgentWireError(Exception):
    """Base exception for all turn pipeline errors."""

    kind: str = ErrorKind.PROCESS_ERROR.value


class DirectoryNotFoundError(AgentWireError):
    """The working directory does not exist (or vanished before spawn)."""

    kind = ErrorKind.DIRECTORY_NOT_FOUND.value

    def __init__(self, path: str, *, during_spawn: bool = False):
        self.path = path
        self.during_spawn = during_spawn
        if during_spawn:
            message = (
                f"Working directory was deleted during operation: {path}\n\n"
                "The project directory no longer exists.\n"
                "Please select a different project or restore the directory."
            )
        else:
            message = (
                f"Working directory does not exist: {path}\n\n"
                "The project directory has been deleted or moved.\n"
                "Please select a different project or restore the directory."
            )
        super().__init__(message)


class SpawnFailedError(AgentWireError):
    """The agent executable could not be started."""

    kind = ErrorKind.SPAWN_FAILED.value

    def __init__(self, executable: str, reason: str, remediation: str = ""):
        self.executable = executable
        self.reason = reason
        self.remediation = remediation
        message = f"Failed to start agent CLI '{executable}': {reason}"
        if remediation:
            message = f"{message}\n\n{remediation}"
        super().__init__(message)


class ResponseTimeoutError(AgentWireError):
    """No output arrived within the response-start window."""

    kind = ErrorKind.TIMEOUT.value

    def __init__(self, session_id: str, timeout_seconds: float):
        self.session_id = session_id
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Agent CLI timeout - no response received after "
            f"{timeout_seconds:g}s (session {session_id})"
        )


class ProcessRuntimeError(AgentWireError):
    """The OS reported an error on an already running process."""

    kind = ErrorKind.PROCESS_ERROR.value

    def __init__(self, session_id: str, reason: str):
        self.session_id = session_id
        self.reason = reason
        super().__init__(f"Agent process error (session {session_id}): {reason}")


class NonZeroExitError(AgentWireError):
    """The process ran to completion but reported failure."""

    kind = ErrorKind.NONZERO_EXIT.value

    def __init__(self, exit_code: int | None, stderr_tail: str = ""):
        self.exit_code = exit_code
        self.stderr_tail = stderr_tail
        message = f"Agent CLI exited with code {exit_code}"
        if stderr_tail:
            message = f"{message}\n\n{stderr_tail}"
        super().__init__(message)


class SessionBusyError(AgentWireError):
    """A process is already registered for this session."""

    kind = ErrorKind.PROCESS_ERROR.value

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(
            f"Session {session_id} already has a running agent process"
        )
