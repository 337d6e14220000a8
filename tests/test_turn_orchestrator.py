import asyncio
import shutil
import sys
import textwrap
from pathlib import Path

import pytest

from agentwire.adapters.events import (
    Aborted,
    Complete,
    Content,
    Error,
    SessionCreated,
    Status,
)
from agentwire.engine.config import AgentConfig
from agentwire.engine.errors import SessionBusyError
from agentwire.engine.models import ImageAttachment, TurnRequest, TurnState
from agentwire.engine.orchestrator import TurnOrchestrator
from agentwire.shared.models.message import MessageRole


class _Recorder:
    """Event sink that keeps every event in arrival order."""

    def __init__(self) -> None:
        self.events: list = []

    async def __call__(self, event) -> None:
        self.events.append(event)

    def of(self, cls) -> list:
        return [e for e in self.events if isinstance(e, cls)]

    @property
    def content(self) -> str:
        return "".join(e.text for e in self.of(Content))


def _agent_script(tmp_path: Path, body: str) -> Path:
    script = tmp_path / "fake_agent.py"
    script.write_text(textwrap.dedent(body), encoding="utf-8")
    return script


def _orchestrator(tmp_path: Path, script: Path, **overrides) -> TurnOrchestrator:
    settings = dict(
        executable=sys.executable,
        subcommand=str(script),
        prompt_flag="--prompt",
        model_flag="",
        home_dir=str(tmp_path / "home"),
        response_timeout_seconds=10.0,
        kill_grace_seconds=1.0,
        flush_delay_seconds=0.01,
    )
    settings.update(overrides)
    return TurnOrchestrator(AgentConfig(**settings))


def _project(tmp_path: Path) -> Path:
    project = tmp_path / "project"
    project.mkdir(exist_ok=True)
    return project


async def _wait_until(predicate, timeout: float = 10.0) -> None:
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.01)
    await asyncio.wait_for(_poll(), timeout=timeout)


CHATTY_AGENT = """
    import os
    print("Qwen Code v0.0.14")
    print("workdir: " + os.getcwd())
    print("session id: ext-42")
    print("")
    print("Hello there")
    print("[2025-01-01T00:00:00] thinking")
    print("pondering the request")
    print("[2025-01-01T00:00:01] qwen")
    print("General Kenobi")
    print("tokens used: 1,024")
"""


@pytest.mark.asyncio
async def test_new_session_turn_streams_clean_content(tmp_path: Path) -> None:
    orch = _orchestrator(tmp_path, _agent_script(tmp_path, CHATTY_AGENT))
    sink = _Recorder()

    result = await orch.run_turn(
        TurnRequest(prompt="say hello", cwd=str(_project(tmp_path))), sink,
    )

    assert result.success
    assert result.state == TurnState.COMPLETED
    assert result.exit_code == 0
    assert sink.content == "Hello there\nGeneral Kenobi\n"
    assert result.response == sink.content

    created = sink.of(SessionCreated)
    assert len(created) == 1
    assert sink.events[0] is created[0]
    assert created[0].session_id == result.session_id
    assert result.session_id.startswith("agent_")

    statuses = sink.of(Status)
    assert [(s.text, s.tokens) for s in statuses] == [("thinking", None), ("tokens", 1024)]
    assert statuses[0].can_interrupt
    assert sink.of(Error) == []
    assert isinstance(sink.events[-1], Complete)
    assert sink.events[-1].exit_code == 0
    assert all(e.session_id == result.session_id for e in sink.events)


@pytest.mark.asyncio
async def test_turn_persists_both_messages_and_external_id(tmp_path: Path) -> None:
    orch = _orchestrator(tmp_path, _agent_script(tmp_path, CHATTY_AGENT))
    sink = _Recorder()

    result = await orch.run_turn(
        TurnRequest(prompt="say hello", cwd=str(_project(tmp_path))), sink,
    )

    messages = orch.registry.messages(result.session_id)
    assert [(m.role, m.content) for m in messages] == [
        (MessageRole.USER, "say hello"),
        (MessageRole.ASSISTANT, sink.content),
    ]
    assert orch.registry.get(result.session_id).external_session_id == "ext-42"
    assert not orch.is_active(result.session_id)
    assert orch.supervisor.get(result.session_id) is None


@pytest.mark.asyncio
async def test_existing_session_does_not_announce_creation(tmp_path: Path) -> None:
    orch = _orchestrator(tmp_path, _agent_script(tmp_path, CHATTY_AGENT))
    project = _project(tmp_path)
    first = await orch.run_turn(TurnRequest(prompt="one", cwd=str(project)), _Recorder())

    sink = _Recorder()
    second = await orch.run_turn(
        TurnRequest(prompt="two", cwd=str(project), session_id=first.session_id), sink,
    )

    assert second.session_id == first.session_id
    assert sink.of(SessionCreated) == []
    assert len(orch.registry.messages(first.session_id)) == 4


@pytest.mark.asyncio
async def test_slow_byte_stream_round_trips_to_registry(tmp_path: Path) -> None:
    script = _agent_script(tmp_path, """
        import sys, time
        text = "banner\\nmodel: x\\n\\nfirst line of the answer\\n[t] thinking\\nhidden\\n[t] qwen\\nsecond line\\nno newline at end"
        for ch in text:
            sys.stdout.write(ch)
            sys.stdout.flush()
            time.sleep(0.001)
    """)
    orch = _orchestrator(tmp_path, script)
    sink = _Recorder()

    result = await orch.run_turn(
        TurnRequest(prompt="go", cwd=str(_project(tmp_path))), sink,
    )

    expected = "first line of the answer\nsecond line\nno newline at end\n"
    assert sink.content == expected
    stored = orch.registry.messages(result.session_id)[-1]
    assert stored.role == MessageRole.ASSISTANT
    assert stored.content == expected
    assert len(sink.of(Status)) == 1


@pytest.mark.asyncio
async def test_prompt_on_stdin_when_prompt_flag_is_empty(tmp_path: Path) -> None:
    script = _agent_script(tmp_path, """
        import sys
        data = sys.stdin.read()
        print("Reading prompt from stdin...", file=sys.stderr)
        print("echo: " + data.strip())
    """)
    orch = _orchestrator(tmp_path, script, prompt_flag="")
    sink = _Recorder()

    result = await orch.run_turn(
        TurnRequest(prompt="ping", cwd=str(_project(tmp_path))), sink,
    )

    assert result.success
    assert sink.content == "echo: ping\n"
    assert sink.of(Error) == []


@pytest.mark.asyncio
async def test_nonzero_exit_reports_error_then_completes(tmp_path: Path) -> None:
    script = _agent_script(tmp_path, """
        import sys
        print("partial answer")
        print("second part")
        sys.stdout.flush()
        print("DeprecationWarning: noisy", file=sys.stderr)
        sys.stderr.flush()
        print("model overloaded", file=sys.stderr)
        sys.exit(2)
    """)
    orch = _orchestrator(tmp_path, script)
    sink = _Recorder()

    result = await orch.run_turn(
        TurnRequest(prompt="go", cwd=str(_project(tmp_path))), sink,
    )

    assert not result.success
    assert result.state == TurnState.FAILED
    assert result.exit_code == 2
    errors = sink.of(Error)
    assert len(errors) == 1
    assert errors[0].kind == "nonzero-exit"
    assert "model overloaded" in errors[0].message
    assert "DeprecationWarning" not in errors[0].message
    assert isinstance(sink.events[-1], Complete)
    assert sink.events[-1].exit_code == 2
    assert sink.content == "partial answer\nsecond part\n"
    assert orch.registry.messages(result.session_id)[-1].content == sink.content


@pytest.mark.asyncio
async def test_silent_process_times_out(tmp_path: Path) -> None:
    script = _agent_script(tmp_path, """
        import time
        time.sleep(30)
    """)
    orch = _orchestrator(tmp_path, script, response_timeout_seconds=0.3)
    sink = _Recorder()

    result = await asyncio.wait_for(
        orch.run_turn(TurnRequest(prompt="go", cwd=str(_project(tmp_path))), sink),
        timeout=15,
    )

    errors = sink.of(Error)
    assert [e.kind for e in errors] == ["timeout"]
    terminal = [e for e in sink.events if isinstance(e, (Complete, Aborted))]
    assert len(terminal) == 1
    assert sink.events[-1] is terminal[0]
    assert result.state == TurnState.FAILED
    assert result.exit_code is not None and result.exit_code < 0
    assert orch.supervisor.get(result.session_id) is None
    await orch.shutdown()


@pytest.mark.asyncio
async def test_abort_emits_aborted_instead_of_complete(tmp_path: Path) -> None:
    script = _agent_script(tmp_path, """
        import time
        print("working", flush=True)
        time.sleep(30)
    """)
    orch = _orchestrator(tmp_path, script)
    sink = _Recorder()
    task = asyncio.create_task(
        orch.run_turn(
            TurnRequest(prompt="go", cwd=str(_project(tmp_path)), session_id="s1"), sink,
        )
    )
    await _wait_until(lambda: orch.supervisor.get("s1") is not None)

    assert orch.abort("s1") is True
    assert orch.abort("s1") is True

    result = await asyncio.wait_for(task, timeout=15)

    assert result.aborted
    assert result.state == TurnState.ABORTED
    assert isinstance(sink.events[-1], Aborted)
    assert sink.of(Complete) == []
    assert sink.of(Error) == []
    assert orch.abort("s1") is False
    assert orch.supervisor.get("s1") is None
    await orch.shutdown()


@pytest.mark.asyncio
async def test_second_turn_on_busy_session_is_rejected(tmp_path: Path) -> None:
    script = _agent_script(tmp_path, """
        import time
        time.sleep(30)
    """)
    orch = _orchestrator(tmp_path, script)
    project = str(_project(tmp_path))
    sink = _Recorder()
    task = asyncio.create_task(
        orch.run_turn(TurnRequest(prompt="one", cwd=project, session_id="s1"), sink)
    )
    await _wait_until(lambda: orch.supervisor.get("s1") is not None)

    other = _Recorder()
    with pytest.raises(SessionBusyError):
        await orch.run_turn(TurnRequest(prompt="two", cwd=project, session_id="s1"), other)
    assert other.events == []

    orch.abort("s1")
    await asyncio.wait_for(task, timeout=15)
    await orch.shutdown()


@pytest.mark.asyncio
async def test_missing_directory_fails_before_spawn(tmp_path: Path) -> None:
    orch = _orchestrator(tmp_path, _agent_script(tmp_path, CHATTY_AGENT))
    sink = _Recorder()

    result = await orch.run_turn(
        TurnRequest(prompt="go", cwd=str(tmp_path / "nowhere")), sink,
    )

    assert [type(e) for e in sink.events] == [Error, Complete]
    assert sink.events[0].kind == "directory-not-found"
    assert sink.events[1].exit_code == -1
    assert result.state == TurnState.FAILED
    assert result.session_id is None
    assert orch.registry.list_sessions() == []


@pytest.mark.asyncio
async def test_missing_binary_reports_spawn_failure(tmp_path: Path) -> None:
    orch = TurnOrchestrator(AgentConfig(
        executable=str(tmp_path / "not-installed"),
        home_dir=str(tmp_path / "home"),
    ))
    sink = _Recorder()

    result = await orch.run_turn(
        TurnRequest(prompt="go", cwd=str(_project(tmp_path))), sink,
    )

    assert [type(e) for e in sink.events] == [SessionCreated, Error, Complete]
    assert sink.events[1].kind == "spawn-failed"
    assert "Please ensure" in sink.events[1].message
    assert result.state == TurnState.FAILED
    assert not orch.is_active(result.session_id)


@pytest.mark.asyncio
async def test_raw_mode_forwards_stdout_unfiltered(tmp_path: Path) -> None:
    script = _agent_script(tmp_path, """
        print("model: kept in raw mode")
        print("tokens used: 5")
    """)
    orch = _orchestrator(tmp_path, script, classify_output=False)
    sink = _Recorder()

    result = await orch.run_turn(
        TurnRequest(prompt="go", cwd=str(_project(tmp_path))), sink,
    )

    assert sink.content == "model: kept in raw mode\ntokens used: 5\n"
    assert sink.of(Status) == []
    assert result.response == sink.content


@pytest.mark.skipif(shutil.which("bash") is None, reason="bash not available")
@pytest.mark.asyncio
async def test_template_strategy_reads_prompt_file_and_cleans_up(tmp_path: Path) -> None:
    script = _agent_script(tmp_path, """
        import sys
        from pathlib import Path
        print("file says: " + Path(sys.argv[1]).read_text())
        print("images: %d" % (len(sys.argv) - 2))
    """)
    project = _project(tmp_path)
    orch = _orchestrator(
        tmp_path,
        script,
        command_template=f'"{sys.executable}" "{script}" "{{prompt_file}}" {{images}}',
        shell="bash",
    )
    sink = _Recorder()
    png = "data:image/png;base64,iVBORw0KGgo="

    result = await orch.run_turn(
        TurnRequest(
            prompt="from a file", cwd=str(project), images=[ImageAttachment(data=png)],
        ),
        sink,
    )

    assert result.success, sink.events
    assert sink.content == "file says: from a file\nimages: 1\n"
    staging_root = project / ".tmp" / "agent"
    assert not staging_root.exists() or list(staging_root.iterdir()) == []


@pytest.mark.asyncio
async def test_abort_during_build_stops_process_right_after_spawn(tmp_path: Path) -> None:
    script = _agent_script(tmp_path, """
        import time
        print("should never be seen", flush=True)
        time.sleep(30)
    """)
    orch = _orchestrator(tmp_path, script)
    aborted_early: list[bool] = []

    class _AbortOnCreate(_Recorder):
        async def __call__(self, event) -> None:
            await super().__call__(event)
            if isinstance(event, SessionCreated):
                aborted_early.append(orch.supervisor.get(event.session_id) is None)
                aborted_early.append(orch.abort(event.session_id))

    sink = _AbortOnCreate()
    result = await asyncio.wait_for(
        orch.run_turn(TurnRequest(prompt="go", cwd=str(_project(tmp_path))), sink),
        timeout=15,
    )

    assert aborted_early == [True, True]
    assert result.state == TurnState.ABORTED
    assert [type(e) for e in sink.events if not isinstance(e, Content)] == [
        SessionCreated, Aborted,
    ]
    assert sink.of(Error) == []
    assert orch.supervisor.get(result.session_id) is None
    await orch.shutdown()


@pytest.mark.asyncio
async def test_image_attachment_is_staged_passed_and_removed(tmp_path: Path) -> None:
    script = _agent_script(tmp_path, """
        import sys
        from pathlib import Path
        args = sys.argv[1:]
        image = Path(args[args.index("--image") + 1])
        print("image %s with %d bytes" % (image.suffix, len(image.read_bytes())))
        print("staged in " + image.parent.parent.name)
    """)
    project = _project(tmp_path)
    orch = _orchestrator(tmp_path, script, image_flag="--image")
    sink = _Recorder()
    png = "data:image/png;base64,iVBORw0KGgo="

    result = await orch.run_turn(
        TurnRequest(prompt="look", cwd=str(project), images=[ImageAttachment(data=png)]),
        sink,
    )

    assert result.success, sink.events
    assert sink.content == "image .png with 8 bytes\nstaged in agent\n"
    staging_root = project / ".tmp" / "agent"
    assert not staging_root.exists() or list(staging_root.iterdir()) == []


@pytest.mark.asyncio
async def test_malformed_image_mime_does_not_fail_the_turn(tmp_path: Path) -> None:
    script = _agent_script(tmp_path, """
        import sys
        print("args: %d" % len(sys.argv[1:]))
    """)
    project = _project(tmp_path)
    orch = _orchestrator(tmp_path, script, image_flag="--image")
    sink = _Recorder()

    result = await orch.run_turn(
        TurnRequest(
            prompt="look",
            cwd=str(project),
            images=[ImageAttachment(data="data:image/x/y;base64,iVBORw0KGgo=")],
        ),
        sink,
    )

    assert result.success, sink.events
    assert sink.of(Error) == []
    assert sink.content == "args: 4\n"
    staging_root = project / ".tmp" / "agent"
    assert not staging_root.exists() or list(staging_root.iterdir()) == []


@pytest.mark.asyncio
async def test_session_id_with_spaces_and_slashes_runs_normally(tmp_path: Path) -> None:
    orch = _orchestrator(tmp_path, _agent_script(tmp_path, CHATTY_AGENT))
    sink = _Recorder()

    result = await orch.run_turn(
        TurnRequest(prompt="hi", cwd=str(_project(tmp_path)), session_id="chat 1/../x"),
        sink,
    )

    assert result.success, sink.events
    assert result.session_id == "chat 1/../x"
    assert sink.content == "Hello there\nGeneral Kenobi\n"
    assert isinstance(sink.events[-1], Complete)
    assert orch.registry.list_sessions() == ["chat 1/../x"]
    assert [m.role for m in orch.registry.messages("chat 1/../x")] == [
        MessageRole.USER, MessageRole.ASSISTANT,
    ]
