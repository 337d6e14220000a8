"""One-shot terminal runner for a single turn.

Usage:
    agentwire-turn "Explain this repository"
    agentwire-turn --session agent_1718000000000 "And now the tests"
    agentwire-turn --prompt-file task.md --image screenshot.png --cwd ~/src/app
"""
from __future__ import annotations

import argparse
import asyncio
import base64
import json
import logging
import mimetypes
import sys
from pathlib import Path

from rich.console import Console
from rich.text import Text

from agentwire.adapters.event_bus import EventBus
from agentwire.adapters.events import (
    Aborted,
    Complete,
    Content,
    Error,
    SessionCreated,
    Status,
    TurnEvent,
    event_to_dict,
)

from .config import AgentConfig
from .errors import SessionBusyError
from .models import ImageAttachment, ToolSettings, TurnRequest
from .orchestrator import TurnOrchestrator

console = Console()
err_console = Console(stderr=True)


def _format_elapsed(seconds: float) -> str:
    secs = int(seconds)
    if secs < 60:
        return f"{secs}s"
    m, s = divmod(secs, 60)
    return f"{m}m {s}s"


class EventPrinter:
    """Renders turn events to the terminal as they arrive."""

    def __init__(self, *, as_json: bool = False) -> None:
        self._as_json = as_json
        self._mid_line = False

    async def __call__(self, event: TurnEvent) -> None:
        if self._as_json:
            console.print_json(json.dumps(event_to_dict(event)))
            return
        if isinstance(event, Content):
            console.print(Text(event.text), end="", soft_wrap=True)
            self._mid_line = not event.text.endswith("\n")
            return
        self._break_line()
        if isinstance(event, SessionCreated):
            console.print(Text(f"session {event.session_id}", style="dim"))
        elif isinstance(event, Status):
            if event.tokens is not None:
                console.print(Text(f"{event.tokens} tokens used", style="dim"))
            else:
                console.print(Text(f"{event.text}...", style="italic yellow"))
        elif isinstance(event, Error):
            err_console.print(Text(f"[{event.kind}] {event.message}", style="red bold"))
        elif isinstance(event, Complete):
            style = "green" if event.exit_code == 0 else "red"
            console.print(Text(f"exit code {event.exit_code}", style=style))
        elif isinstance(event, Aborted):
            console.print(Text("aborted", style="yellow bold"))

    def _break_line(self) -> None:
        if self._mid_line:
            console.print()
            self._mid_line = False


def _image_attachment(path: str) -> ImageAttachment:
    p = Path(path).expanduser()
    if not p.is_file():
        print(f"Error: Image file not found: {path}")
        sys.exit(1)
    mime = mimetypes.guess_type(p.name)[0] or "image/png"
    payload = base64.b64encode(p.read_bytes()).decode("ascii")
    return ImageAttachment(data=f"data:{mime};base64,{payload}", name=p.name)


def _resolve_prompt(inline: str | None, file_path: str | None) -> str:
    """Get the prompt from the inline arg or a file. Exactly one must be provided."""
    if inline and file_path:
        print("Error: Provide either a prompt string or --prompt-file, not both.")
        sys.exit(1)

    if file_path:
        p = Path(file_path)
        if not p.is_file():
            print(f"Error: Prompt file not found: {file_path}")
            sys.exit(1)
        return p.read_text(encoding="utf-8").strip()

    if inline:
        return inline

    print("Error: Provide a prompt string or --prompt-file.")
    sys.exit(1)


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="agentwire-turn",
        description="Run one agent CLI turn and print its event stream",
    )
    parser.add_argument(
        "prompt",
        nargs="?",
        default=None,
        help="The prompt to send (inline string)",
    )
    parser.add_argument(
        "--prompt-file", "-f",
        default=None,
        help="Read the prompt from a file",
    )
    parser.add_argument(
        "--cwd",
        default=None,
        help="Working directory for the agent (default: current dir)",
    )
    parser.add_argument(
        "--session", "-s",
        default=None,
        help="Continue an existing session instead of creating one",
    )
    parser.add_argument(
        "--model", "-m",
        default=None,
        help="Model to pass to the agent CLI",
    )
    parser.add_argument(
        "--image",
        action="append",
        default=[],
        help="Attach an image file (repeatable)",
    )
    parser.add_argument(
        "--skip-permissions",
        action="store_true",
        help="Pass the configured permission-bypass flag",
    )
    parser.add_argument(
        "--extra-arg",
        action="append",
        default=[],
        help="Extra argument appended to the agent command (repeatable)",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Response-start timeout in seconds (default: 60)",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="YAML config file overlaying the environment",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print events as JSON objects",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )

    args = parser.parse_args()

    level = logging.DEBUG if args.verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )

    config = AgentConfig.from_env()
    if args.config:
        from .yaml_config import load_yaml_config
        config = load_yaml_config(args.config, base=config)
    if args.timeout is not None:
        config.response_timeout_seconds = args.timeout

    request = TurnRequest(
        prompt=_resolve_prompt(args.prompt, args.prompt_file),
        cwd=args.cwd or str(Path.cwd()),
        session_id=args.session,
        model=args.model,
        images=[_image_attachment(p) for p in args.image],
        tools=ToolSettings(
            skip_permissions=args.skip_permissions,
            extra_args=list(args.extra_arg),
        ),
    )

    orchestrator = TurnOrchestrator(config)
    printer = EventPrinter(as_json=args.json)

    async def _run():
        bus = EventBus()

        async def _pump():
            async for event in bus.consume():
                await printer(event)

        pump = asyncio.create_task(_pump())
        try:
            return await orchestrator.run_turn(request, bus.make_callback())
        finally:
            bus.close()
            await pump
            for event in bus.drain():
                await printer(event)
            await orchestrator.shutdown()

    try:
        result = asyncio.run(_run())
    except SessionBusyError as exc:
        err_console.print(Text(str(exc), style="red"))
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nInterrupted.")
        sys.exit(130)

    if not args.json:
        console.print(Text(
            f"{result.state.value} in {_format_elapsed(result.duration_seconds)}",
            style="dim",
        ))
    sys.exit(0 if result.success else 1)


if __name__ == "__main__":
    main()
