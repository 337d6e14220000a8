"""Turn orchestrator: one prompt in, one event stream out.

``TurnOrchestrator.run_turn()`` drives a single turn through
IDLE -> BUILDING -> SPAWNING -> STREAMING -> FINALIZING -> terminal.
Every failure that can happen along the way is an ``AgentWireError``;
the orchestrator catches them at this boundary and turns them into at
most one ``error`` event, always followed by exactly one ``complete``
or ``aborted`` event so the caller is never left waiting.

Within a turn all work happens on one task that consumes the managed
process's message queue in order, so classifier and aggregator state
needs no locking. The only state shared across turns is the
supervisor's process map, the registry, and ``_turns`` below.
"""
from __future__ import annotations

import asyncio
import codecs
import logging
import time

from agentwire.adapters.events import (
    Aborted,
    Complete,
    Content,
    Error,
    SessionCreated,
    Status,
    TurnEvent,
)
from agentwire.shared.models.message import MessageRole
from agentwire.shared.services.persistence import SessionRegistry

from .aggregator import OutputAggregator
from .classifier import Segment, SegmentKind, StreamClassifier
from .command_builder import CommandBuilder, validate_cwd
from .config import AgentConfig, EventCallback, fire_event
from .errors import (
    AgentWireError,
    NonZeroExitError,
    ProcessRuntimeError,
    ResponseTimeoutError,
    SessionBusyError,
)
from .lifecycle import validate_transition
from .models import TurnRequest, TurnResult, TurnState
from .payloads import StagedPayload, cleanup_payloads, stage_payloads
from .supervisor import ManagedProcess, MessageKind, ProcessMessage, ProcessSupervisor

logger = logging.getLogger(__name__)

# stderr chunks containing any of these are diagnostics, not errors.
NON_ACTIONABLE_STDERR: tuple[str, ...] = (
    "[DEP0040]",
    "DEP0040",
    "DeprecationWarning",
    "--trace-deprecation",
    "Reading prompt from stdin",
)

# Exit code reported when a turn ends before any process ran.
NO_PROCESS_EXIT_CODE = -1

_STDERR_TAIL_CHARS = 2000


def is_non_actionable_stderr(text: str) -> bool:
    return any(marker in text for marker in NON_ACTIONABLE_STDERR)


class TurnOrchestrator:
    """Runs turns against the agent CLI and tracks the active ones."""

    def __init__(
        self,
        config: AgentConfig,
        *,
        registry: SessionRegistry | None = None,
        supervisor: ProcessSupervisor | None = None,
        builder: CommandBuilder | None = None,
    ) -> None:
        self.config = config
        self.registry = registry or SessionRegistry(config.sessions_dir)
        self.supervisor = supervisor or ProcessSupervisor(
            kill_grace_seconds=config.kill_grace_seconds,
        )
        self.builder = builder or CommandBuilder(config)
        self._turns: dict[str, _Turn] = {}

    @property
    def active_sessions(self) -> list[str]:
        return list(self._turns)

    def is_active(self, session_id: str) -> bool:
        return session_id in self._turns

    async def run_turn(
        self,
        request: TurnRequest,
        sink: EventCallback | None = None,
    ) -> TurnResult:
        """Run one turn to completion, streaming events to ``sink``.

        Raises SessionBusyError (before any event is sent) when the
        session already has a turn in flight. Every other failure is
        reported through the event stream and the returned TurnResult.
        """
        if request.session_id:
            session_id = request.session_id
            if session_id in self._turns or self.supervisor.is_busy(session_id):
                raise SessionBusyError(session_id)
            is_new = False
        else:
            session_id = self.registry.new_session_id(self.config.session_prefix)
            is_new = True

        turn = _Turn(self, request, session_id, is_new=is_new, sink=sink)
        self._turns[session_id] = turn
        try:
            result = await turn.run()
        finally:
            if self._turns.get(session_id) is turn:
                del self._turns[session_id]
        logger.info(
            "Turn for session %s finished: state=%s exit_code=%s (%.1fs)",
            session_id, result.state.value, result.exit_code,
            result.duration_seconds,
        )
        return result

    def abort(self, session_id: str) -> bool:
        """Request cancellation of the session's running turn.

        Returns False when no abortable turn exists. Calling it again
        while the first abort is in progress is a no-op.
        """
        turn = self._turns.get(session_id)
        if turn is None:
            logger.debug("abort: no active turn for session %s", session_id)
            return False
        return turn.request_abort()

    async def shutdown(self) -> None:
        """Abort every active turn and reap their processes."""
        for session_id in list(self._turns):
            self.abort(session_id)
        await self.supervisor.shutdown()


class _Turn:
    """State of one turn. Created and consumed by TurnOrchestrator."""

    def __init__(
        self,
        owner: TurnOrchestrator,
        request: TurnRequest,
        session_id: str,
        *,
        is_new: bool,
        sink: EventCallback | None,
    ) -> None:
        self._owner = owner
        self._config = owner.config
        self.request = request
        self.session_id = session_id
        self.is_new = is_new
        self._sink = sink
        self.state = TurnState.IDLE
        self.aborted = False
        self._session_ready = False
        self._error: AgentWireError | None = None
        self._output_seen = False
        self._timeout_handle: asyncio.TimerHandle | None = None
        self._managed: ManagedProcess | None = None
        self._staged = StagedPayload()
        self._started = time.monotonic()
        self._stderr_parts: list[str] = []
        self._stdout_decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._stderr_decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._classifier: StreamClassifier | None = None
        if self._config.classify_output:
            self._classifier = StreamClassifier(
                tool_marker=self._config.tool_marker,
                prompt=request.prompt,
            )
        self._aggregator = OutputAggregator(
            self._emit_content,
            delay=self._config.flush_delay_seconds,
            threshold=self._config.batch_threshold_chars,
        )

    # ── events / state ──

    @property
    def _event_session_id(self) -> str | None:
        if self._session_ready:
            return self.session_id
        return self.request.session_id

    async def _emit(self, event: TurnEvent) -> None:
        if event.session_id is None:
            event.session_id = self._event_session_id
        await fire_event(self._sink, event)

    async def _emit_content(self, text: str) -> None:
        await self._emit(Content(text=text))

    def _transition(self, new_state: TurnState) -> None:
        validate_transition(self.state, new_state)
        old = self.state
        self.state = new_state
        logger.debug(
            "Turn %s: %s -> %s", self.session_id, old.value, new_state.value,
        )

    async def _report(self, exc: AgentWireError) -> None:
        """Emit the turn's error event. Only the first error is reported."""
        if self._error is not None:
            logger.debug(
                "Turn %s: suppressing secondary error %s", self.session_id, exc.kind,
            )
            return
        self._error = exc
        await self._emit(Error(message=str(exc), kind=exc.kind))

    def request_abort(self) -> bool:
        if self.aborted:
            return True
        if self.state not in (
            TurnState.IDLE, TurnState.BUILDING,
            TurnState.SPAWNING, TurnState.STREAMING,
        ):
            return False
        self.aborted = True
        logger.info("Turn %s: abort requested", self.session_id)
        if self._managed is not None:
            self._owner.supervisor.terminate(self.session_id)
        return True

    # ── main flow ──

    async def run(self) -> TurnResult:
        self._transition(TurnState.BUILDING)
        try:
            cwd = validate_cwd(self.request.cwd)
            session = await self._resolve_session(cwd)
            self._staged = self._stage(cwd)
            spec = self._owner.builder.build(
                self.request,
                self._staged,
                cwd=cwd,
                external_session_id=session.external_session_id,
            )
        except AgentWireError as exc:
            return await self._fail_before_process(exc)

        self._transition(TurnState.SPAWNING)
        try:
            self._managed = await self._owner.supervisor.spawn(
                self.session_id,
                spec,
                temp_paths=self._staged.paths,
                temp_dir=self._staged.temp_dir,
            )
        except AgentWireError as exc:
            return await self._fail_before_process(exc)

        self._transition(TurnState.STREAMING)
        if self.aborted:
            self._owner.supervisor.terminate(self.session_id)
        self._arm_timeout(self._managed)
        try:
            exit_code = await self._consume(self._managed)
        except asyncio.CancelledError:
            self._owner.supervisor.terminate(self.session_id)
            self._disarm_timeout()
            cleanup_payloads(self._staged.paths, self._staged.temp_dir)
            raise
        return await self._finalize(exit_code)

    async def _resolve_session(self, cwd: str):
        registry = self._owner.registry
        try:
            session = registry.get(self.session_id)
            if session is None:
                session = registry.create(self.session_id, cwd)
        except (OSError, ValueError) as exc:
            raise ProcessRuntimeError(
                self.session_id, f"could not open session: {exc}",
            ) from exc
        self._session_ready = True
        if self.is_new:
            await self._emit(SessionCreated())
        if self.request.prompt:
            try:
                registry.add_message(
                    self.session_id, MessageRole.USER, self.request.prompt,
                )
            except OSError as exc:
                raise ProcessRuntimeError(
                    self.session_id, f"could not persist prompt: {exc}",
                ) from exc
        return session

    def _stage(self, cwd: str) -> StagedPayload:
        try:
            return stage_payloads(
                cwd,
                self.request.prompt,
                self.request.images,
                temp_subdir=self._config.temp_subdir,
                write_prompt=self._owner.builder.needs_prompt_file,
            )
        except OSError as exc:
            raise ProcessRuntimeError(
                self.session_id, f"could not write turn payload: {exc}",
            ) from exc

    async def _fail_before_process(self, exc: AgentWireError) -> TurnResult:
        logger.warning("Turn %s failed before streaming: %s", self.session_id, exc)
        cleanup_payloads(self._staged.paths, self._staged.temp_dir)
        await self._report(exc)
        self._transition(TurnState.FAILED)
        await self._emit(Complete(exit_code=NO_PROCESS_EXIT_CODE))
        return self._result(NO_PROCESS_EXIT_CODE, "")

    # ── streaming ──

    def _arm_timeout(self, managed: ManagedProcess) -> None:
        timeout = self._config.response_timeout_seconds
        if timeout <= 0:
            return
        loop = asyncio.get_running_loop()
        self._timeout_handle = loop.call_later(
            timeout, managed.post, ProcessMessage(MessageKind.TIMEOUT),
        )

    def _disarm_timeout(self) -> None:
        if self._timeout_handle is not None:
            self._timeout_handle.cancel()
            self._timeout_handle = None

    async def _consume(self, managed: ManagedProcess) -> int | None:
        """Handle process messages in order until the exit message."""
        while True:
            msg = await managed.messages.get()
            if msg.kind == MessageKind.STDOUT:
                if not self._output_seen:
                    self._output_seen = True
                    self._disarm_timeout()
                await self._on_stdout(self._stdout_decoder.decode(msg.data))
            elif msg.kind == MessageKind.STDERR:
                self._on_stderr(self._stderr_decoder.decode(msg.data))
            elif msg.kind == MessageKind.TIMEOUT:
                if self._output_seen or not managed.running:
                    continue
                logger.warning(
                    "Turn %s: no output after %ss, terminating",
                    self.session_id, self._config.response_timeout_seconds,
                )
                await self._report(ResponseTimeoutError(
                    self.session_id, self._config.response_timeout_seconds,
                ))
                self._owner.supervisor.terminate(self.session_id)
            elif msg.kind == MessageKind.ERROR:
                logger.error(
                    "Turn %s: process stream error: %s", self.session_id, msg.error,
                )
                await self._report(ProcessRuntimeError(self.session_id, str(msg.error)))
                self._owner.supervisor.terminate(self.session_id)
            elif msg.kind == MessageKind.EXIT:
                return msg.exit_code

    async def _on_stdout(self, text: str) -> None:
        if not text:
            return
        if self._classifier is None:
            await self._aggregator.push(text)
            return
        await self._route(self._classifier.feed(text))
        await self._aggregator.commit(has_partial=self._classifier.has_partial)

    async def _route(self, segments: list[Segment]) -> None:
        for segment in segments:
            if segment.kind == SegmentKind.CONTENT:
                self._aggregator.add_content(segment.text)
            elif segment.kind == SegmentKind.THINKING_START:
                await self._aggregator.flush()
                await self._emit(Status(text="thinking", can_interrupt=True))
            elif segment.kind == SegmentKind.TOKEN_USAGE:
                await self._aggregator.flush()
                await self._emit(Status(
                    text="tokens", tokens=int(segment.value or 0), can_interrupt=False,
                ))
            elif segment.kind == SegmentKind.SESSION_ID and segment.value:
                self._owner.registry.set_external_session_id(
                    self.session_id, segment.value,
                )

    def _on_stderr(self, text: str) -> None:
        kept: list[str] = []
        for line in text.splitlines(keepends=True):
            if is_non_actionable_stderr(line):
                logger.debug("Turn %s stderr (ignored): %s", self.session_id, line.rstrip())
            else:
                kept.append(line)
        actionable = "".join(kept)
        if not actionable.strip():
            return
        logger.warning("Turn %s stderr: %s", self.session_id, actionable.rstrip())
        self._stderr_parts.append(actionable)

    # ── finalization ──

    async def _finalize(self, exit_code: int | None) -> TurnResult:
        self._disarm_timeout()
        self._transition(TurnState.FINALIZING)

        tail = self._stdout_decoder.decode(b"", final=True)
        if self._classifier is not None:
            if tail:
                await self._route(self._classifier.feed(tail))
            await self._route(self._classifier.finish())
        elif tail:
            await self._aggregator.push(tail)
        response = await self._aggregator.finalize()

        if response:
            self._owner.registry.add_message(
                self.session_id, MessageRole.ASSISTANT, response,
            )

        managed = self._managed
        if managed is not None:
            self._owner.supervisor.release(self.session_id, managed)
        cleanup_payloads(self._staged.paths, self._staged.temp_dir)

        if self.aborted:
            self._transition(TurnState.ABORTED)
            await self._emit(Aborted())
            return self._result(exit_code, response)

        if exit_code != 0 and self._error is None:
            stderr_tail = "".join(self._stderr_parts).strip()[-_STDERR_TAIL_CHARS:]
            await self._report(NonZeroExitError(exit_code, stderr_tail))
        self._transition(
            TurnState.FAILED if self._error is not None else TurnState.COMPLETED
        )
        await self._emit(Complete(exit_code=exit_code))
        return self._result(exit_code, response)

    def _result(self, exit_code: int | None, response: str) -> TurnResult:
        return TurnResult(
            session_id=self.session_id if self._session_ready else None,
            state=self.state,
            exit_code=exit_code,
            response=response,
            error=self._error,
            aborted=self.aborted,
            duration_seconds=time.monotonic() - self._started,
        )
