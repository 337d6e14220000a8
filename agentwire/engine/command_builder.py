"""Command builder: turn request -> concrete agent CLI invocation.

Two mutually exclusive strategies, selected by configuration:

- template: ``AgentConfig.command_template`` is rendered with
  ``{prompt_file}``, ``{cwd}``, ``{model}``, ``{images}`` and
  ``{skip_permissions_flag}`` and run as ``<shell> -lc <line>``.
  Values are string-escaped, not shell-quoted; quoting is the
  template author's job.
- args: flags are appended in a fixed order (subcommand, prompt,
  model, permission bypass, resume, images, extra args) and the
  binary is executed directly, with no shell.

Both strategies run with an environment that turns off colour and
TTY detection so the stream classifier only ever sees plain text.
"""
from __future__ import annotations

import json
import logging
import os
import re
import shutil
from pathlib import Path

from .config import AgentConfig
from .errors import DirectoryNotFoundError
from .models import CommandSpec, CommandStrategy, TurnRequest
from .payloads import StagedPayload

logger = logging.getLogger(__name__)

NON_INTERACTIVE_ENV: dict[str, str] = {
    "TERM": "dumb",
    "NO_COLOR": "1",
    "FORCE_COLOR": "0",
    "CI": "true",
}

_ARG_RE = re.compile(r'''([^\s'"]+)|'([^']*)'|"([^"]*)"''')
_NON_PRINTABLE_RE = re.compile(r"[^\x20-\x7E]")


def split_args(value: str) -> list[str]:
    """Split a space separated argument string.

    Single- or double-quoted runs are one argument each (quotes
    removed); any other run of non-whitespace is one argument.
    """
    if not value:
        return []
    out: list[str] = []
    for match in _ARG_RE.finditer(value):
        bare, single, double = match.groups()
        if bare is not None:
            out.append(bare)
        elif single is not None:
            out.append(single)
        else:
            out.append(double or "")
    return out


def sanitize_cwd(cwd: str | None) -> str:
    """Drop non-printable characters and surrounding whitespace."""
    return _NON_PRINTABLE_RE.sub("", cwd or os.getcwd()).strip()


def validate_cwd(cwd: str | None) -> str:
    """Return the absolute working directory or raise DirectoryNotFoundError."""
    cleaned = sanitize_cwd(cwd)
    path = Path(cleaned).expanduser()
    if not cleaned or not path.is_dir():
        raise DirectoryNotFoundError(cleaned or str(cwd))
    return str(path.resolve())


def build_env(base: dict[str, str] | None = None) -> dict[str, str]:
    """Ambient environment overlaid with the non-interactive settings."""
    env = dict(os.environ if base is None else base)
    env.update(NON_INTERACTIVE_ENV)
    return env


def resolve_executable(command: str) -> list[str]:
    """Resolve the configured binary to the argv prefix that runs it.

    Symlinks are followed; a target ending in ``.js`` is run through
    ``node``. Anything that cannot be resolved is returned as-is so the
    spawn error names the configured command.
    """
    found = shutil.which(command) or command
    path = Path(found)
    try:
        if path.is_symlink():
            target = Path(os.readlink(path))
            if not target.is_absolute():
                target = (path.parent / target).resolve()
            path = target
    except OSError as exc:
        logger.debug("Could not resolve %s: %s", found, exc)
        return [found]

    if path.suffix == ".js" and path.is_file():
        node = shutil.which("node") or "node"
        logger.debug("Executing %s through %s", path, node)
        return [node, str(path)]
    return [str(path) if path != Path(found) else found]


def _value_escape(value: str) -> str:
    # JSON string escaping minus the surrounding quotes.
    return json.dumps(value, ensure_ascii=False)[1:-1]


class CommandBuilder:
    """Builds a CommandSpec for one turn from an AgentConfig."""

    def __init__(self, config: AgentConfig) -> None:
        self._config = config

    @property
    def strategy(self) -> CommandStrategy:
        if self._config.uses_template:
            return CommandStrategy.TEMPLATE
        return CommandStrategy.ARGS

    @property
    def needs_prompt_file(self) -> bool:
        return self.strategy == CommandStrategy.TEMPLATE

    def build(
        self,
        request: TurnRequest,
        staged: StagedPayload,
        *,
        cwd: str | None = None,
        external_session_id: str | None = None,
    ) -> CommandSpec:
        """Build the invocation. ``cwd`` must already be validated."""
        workdir = cwd if cwd is not None else validate_cwd(request.cwd)
        if not Path(workdir).is_dir():
            raise DirectoryNotFoundError(workdir)

        model = request.model or self._config.default_model
        env = build_env()
        if self.strategy == CommandStrategy.TEMPLATE:
            spec = self._build_template(request, staged, workdir, model, env)
        else:
            spec = self._build_args(
                request, staged, workdir, model, env, external_session_id,
            )
        logger.debug(
            "Built %s command: %s (cwd=%s, stdin=%s)",
            spec.strategy.value, spec.executable, workdir,
            spec.stdin_payload is not None,
        )
        return spec

    def _skip_flag(self, request: TurnRequest) -> str:
        if request.tools.skip_permissions and self._config.skip_permissions_flag:
            return self._config.skip_permissions_flag
        return ""

    def _build_template(
        self,
        request: TurnRequest,
        staged: StagedPayload,
        workdir: str,
        model: str,
        env: dict[str, str],
    ) -> CommandSpec:
        prompt_file = str(staged.prompt_file) if staged.prompt_file else ""
        line = (
            self._config.command_template
            .replace("{prompt_file}", _value_escape(prompt_file))
            .replace("{cwd}", _value_escape(workdir))
            .replace("{model}", model or "")
            .replace("{images}", " ".join(str(p) for p in staged.image_paths))
            .replace("{skip_permissions_flag}", self._skip_flag(request))
        )
        return CommandSpec(
            executable=self._config.shell,
            args=("-lc", line),
            env=env,
            cwd=workdir,
            stdin_payload=None,
            strategy=CommandStrategy.TEMPLATE,
        )

    def _build_args(
        self,
        request: TurnRequest,
        staged: StagedPayload,
        workdir: str,
        model: str,
        env: dict[str, str],
        external_session_id: str | None,
    ) -> CommandSpec:
        config = self._config
        prefix = resolve_executable(config.executable)
        args: list[str] = list(prefix[1:])

        if config.subcommand:
            args.append(config.subcommand)

        stdin_payload: str | None = None
        if config.prompt_flag:
            args.extend([config.prompt_flag, request.prompt or ""])
        elif request.prompt and request.prompt.strip():
            stdin_payload = request.prompt + "\n"

        if model and config.model_flag:
            args.extend([config.model_flag, model])

        skip_flag = self._skip_flag(request)
        if skip_flag:
            args.append(skip_flag)

        if config.resume_flag and external_session_id:
            args.extend([config.resume_flag, external_session_id])

        if config.image_flag:
            for path in staged.image_paths:
                args.extend([config.image_flag, str(path)])

        args.extend(split_args(config.extra_args))
        args.extend(request.tools.extra_args)

        return CommandSpec(
            executable=prefix[0],
            args=tuple(args),
            env=env,
            cwd=workdir,
            stdin_payload=stdin_payload,
            strategy=CommandStrategy.ARGS,
        )
