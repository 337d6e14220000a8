"""Process supervisor: one agent CLI subprocess per session.

The supervisor owns the session -> ManagedProcess map. Each spawned
process gets a pump task that turns its stdout/stderr chunks and its
exit into ``ProcessMessage`` objects on a single ordered queue, which
the owning turn consumes.

Termination sends SIGTERM to the process group and, unless told not
to, escalates to SIGKILL after a grace window. The map entry is
removed before any signal is sent, so a second terminate() for the
same session finds nothing and returns False.
"""
from __future__ import annotations

import asyncio
import logging
import os
import signal
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .errors import DirectoryNotFoundError, SessionBusyError, SpawnFailedError
from .models import CommandSpec

logger = logging.getLogger(__name__)

DEFAULT_KILL_GRACE_SECONDS = 2.0
_READ_CHUNK = 4096


class ExitStatus(str, Enum):
    RUNNING = "running"
    EXITED = "exited"
    SPAWN_FAILED = "spawn_failed"


@dataclass
class ExitState:
    status: ExitStatus = ExitStatus.RUNNING
    code: int | None = None
    signal: int | None = None
    error: BaseException | None = None


class MessageKind(str, Enum):
    STDOUT = "stdout"
    STDERR = "stderr"
    ERROR = "error"
    TIMEOUT = "timeout"
    EXIT = "exit"


@dataclass(frozen=True)
class ProcessMessage:
    kind: MessageKind
    data: bytes = b""
    exit_code: int | None = None
    error: BaseException | None = None


@dataclass
class ManagedProcess:
    """A running agent CLI process and the resources tied to it."""
    session_id: str
    process: asyncio.subprocess.Process
    spec: CommandSpec
    temp_paths: list[Path] = field(default_factory=list)
    temp_dir: Path | None = None
    exit_state: ExitState = field(default_factory=ExitState)
    started_at: float = field(default_factory=time.monotonic)
    messages: asyncio.Queue[ProcessMessage] = field(
        default_factory=asyncio.Queue, repr=False,
    )
    terminated: bool = False
    _pump_task: asyncio.Task | None = field(default=None, repr=False)
    _stdin_task: asyncio.Task | None = field(default=None, repr=False)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def stdout(self) -> asyncio.StreamReader | None:
        return self.process.stdout

    @property
    def stderr(self) -> asyncio.StreamReader | None:
        return self.process.stderr

    @property
    def running(self) -> bool:
        return self.exit_state.status == ExitStatus.RUNNING

    def post(self, message: ProcessMessage) -> None:
        """Inject a message (e.g. a timeout) into the ordered channel."""
        self.messages.put_nowait(message)


def spawn_remediation(executable: str) -> str:
    return (
        "Please ensure the agent CLI is installed and accessible.\n"
        "You can either:\n"
        "1. Install it globally (Qwen Code: npm install -g @qwen-code/qwen-code)\n"
        "2. Set AGENT_BIN (or QWEN_PATH) to the full path of the executable\n"
        "3. Add the executable to your system PATH\n"
        f"Current AGENT_BIN: {os.environ.get('AGENT_BIN') or '(not set)'}\n"
        f"Current QWEN_PATH: {os.environ.get('QWEN_PATH') or '(not set)'}\n"
        f"Attempted command: {executable}"
    )


class ProcessSupervisor:
    """Registry of running agent processes keyed by exact session id."""

    def __init__(
        self,
        *,
        kill_grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS,
    ) -> None:
        self._kill_grace = kill_grace_seconds
        self._processes: dict[str, ManagedProcess] = {}
        self._reserved: set[str] = set()
        self._escalations: set[asyncio.Task] = set()

    @property
    def session_ids(self) -> list[str]:
        return list(self._processes)

    def get(self, session_id: str) -> ManagedProcess | None:
        return self._processes.get(session_id)

    def is_busy(self, session_id: str) -> bool:
        return session_id in self._processes or session_id in self._reserved

    async def spawn(
        self,
        session_id: str,
        spec: CommandSpec,
        *,
        temp_paths: list[Path] | None = None,
        temp_dir: Path | None = None,
    ) -> ManagedProcess:
        """Start the process, register it, then feed stdin and close it.

        Raises SessionBusyError, DirectoryNotFoundError or
        SpawnFailedError; nothing is registered on failure.
        """
        if self.is_busy(session_id):
            raise SessionBusyError(session_id)
        self._reserved.add(session_id)
        try:
            proc = await self._start(spec)
        finally:
            self._reserved.discard(session_id)

        managed = ManagedProcess(
            session_id=session_id,
            process=proc,
            spec=spec,
            temp_paths=list(temp_paths or []),
            temp_dir=temp_dir,
        )
        self._processes[session_id] = managed
        logger.info(
            "Agent process spawned for session %s (pid=%d, cmd=%s)",
            session_id, proc.pid, spec.executable,
        )

        # Output is read while stdin is being written.
        managed._pump_task = asyncio.ensure_future(self._pump(managed))
        managed._stdin_task = asyncio.ensure_future(self._feed_stdin(managed))
        return managed

    async def _start(self, spec: CommandSpec) -> asyncio.subprocess.Process:
        if not Path(spec.cwd).is_dir():
            raise DirectoryNotFoundError(spec.cwd, during_spawn=True)
        try:
            # Array-based exec, no shell of our own; stdio fully piped.
            return await asyncio.create_subprocess_exec(
                spec.executable,
                *spec.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=spec.cwd,
                env=spec.env,
                start_new_session=True,
            )
        except (FileNotFoundError, NotADirectoryError) as exc:
            if not Path(spec.cwd).is_dir():
                raise DirectoryNotFoundError(spec.cwd, during_spawn=True) from exc
            raise SpawnFailedError(
                spec.executable, "command not found",
                spawn_remediation(spec.executable),
            ) from exc
        except PermissionError as exc:
            raise SpawnFailedError(
                spec.executable, "permission denied",
                spawn_remediation(spec.executable),
            ) from exc
        except OSError as exc:
            raise SpawnFailedError(
                spec.executable, str(exc), spawn_remediation(spec.executable),
            ) from exc

    async def _feed_stdin(self, managed: ManagedProcess) -> None:
        stdin = managed.process.stdin
        if stdin is None:
            return
        payload = managed.spec.stdin_payload
        try:
            if payload:
                stdin.write(payload.encode("utf-8"))
                await stdin.drain()
        except OSError as exc:
            # The process exited before reading its input; its exit
            # status tells the rest of the story.
            logger.warning(
                "Agent process for session %s closed stdin early: %s",
                managed.session_id, exc,
            )
        finally:
            stdin.close()

    async def _pump(self, managed: ManagedProcess) -> None:
        async def read(stream: asyncio.StreamReader | None, kind: MessageKind) -> None:
            if stream is None:
                return
            while True:
                try:
                    chunk = await stream.read(_READ_CHUNK)
                except OSError as exc:
                    managed.post(ProcessMessage(MessageKind.ERROR, error=exc))
                    return
                if not chunk:
                    return
                managed.post(ProcessMessage(kind, data=chunk))

        proc = managed.process
        await asyncio.gather(
            read(proc.stdout, MessageKind.STDOUT),
            read(proc.stderr, MessageKind.STDERR),
        )
        code = await proc.wait()
        managed.exit_state = ExitState(
            status=ExitStatus.EXITED,
            code=code,
            signal=-code if code is not None and code < 0 else None,
        )
        logger.info(
            "Agent process for session %s exited (pid=%d, code=%s, %.1fs)",
            managed.session_id, proc.pid, code,
            time.monotonic() - managed.started_at,
        )
        managed.post(ProcessMessage(MessageKind.EXIT, exit_code=code))

    def terminate(self, session_id: str, escalate: bool = True) -> bool:
        """Stop the session's process. Returns False if none is registered."""
        managed = self._processes.pop(session_id, None)
        if managed is None:
            logger.debug("terminate: no process registered for session %s", session_id)
            return False
        managed.terminated = True
        if managed.process.returncode is not None:
            return True

        self._signal(managed, signal.SIGTERM)
        logger.info(
            "Sent SIGTERM to agent process for session %s (pid=%d)",
            session_id, managed.pid,
        )
        if escalate:
            task = asyncio.ensure_future(self._escalate(managed))
            self._escalations.add(task)
            task.add_done_callback(self._escalations.discard)
        return True

    def release(self, session_id: str, managed: ManagedProcess) -> None:
        """Drop the registry entry if it still belongs to ``managed``."""
        if self._processes.get(session_id) is managed:
            del self._processes[session_id]

    async def _escalate(self, managed: ManagedProcess) -> None:
        try:
            await asyncio.wait_for(
                asyncio.shield(managed.process.wait()), timeout=self._kill_grace,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Agent process for session %s ignored SIGTERM for %.1fs, killing (pid=%d)",
                managed.session_id, self._kill_grace, managed.pid,
            )
            self._signal(managed, signal.SIGKILL)

    @staticmethod
    def _signal(managed: ManagedProcess, sig: int) -> None:
        proc = managed.process
        try:
            # Started in its own session, so the whole group gets it;
            # this also reaches children of a `bash -lc` template.
            os.killpg(proc.pid, sig)
        except ProcessLookupError:
            return
        except (PermissionError, AttributeError, OSError):
            try:
                proc.send_signal(sig)
            except ProcessLookupError:
                return

    async def shutdown(self) -> None:
        """Terminate every registered process and wait for escalations."""
        for session_id in list(self._processes):
            self.terminate(session_id)
        if self._escalations:
            await asyncio.gather(*self._escalations, return_exceptions=True)
