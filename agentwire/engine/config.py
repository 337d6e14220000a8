"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via AGENT_* env vars
(and QWEN_PATH for the executable, kept for older deployments), or
via a YAML file (see yaml_config.py).
"""
from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


# Async sink that receives every outbound event of a turn.
# Signature: async def callback(event: OutboundEvent) -> None
EventCallback = Callable[[Any], Awaitable[None]]


async def fire_event(callback: EventCallback | None, event: Any) -> None:
    """Deliver an event to the sink if set; sink errors never break a turn."""
    if callback is None:
        return
    try:
        await callback(event)
    except Exception:
        logger.warning(
            "Event sink raised while handling %s",
            getattr(event, "event_type", type(event).__name__),
            exc_info=True,
        )


_TRUE_VALUES = {"1", "true", "yes", "on"}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUE_VALUES


@dataclass
class AgentConfig:
    """Turn pipeline configuration."""

    # Template strategy: when set, the command is `<shell> -lc <line>`
    # with {prompt_file} {cwd} {model} {images} {skip_permissions_flag}
    # substituted. Empty selects the arg-array strategy.
    command_template: str = ""
    shell: str = "bash"

    # Arg-array strategy.
    executable: str = "qwen"
    subcommand: str = ""
    # Empty prompt_flag means the prompt is written to stdin instead.
    prompt_flag: str = "--prompt"
    model_flag: str = "-m"
    skip_permissions_flag: str = ""
    image_flag: str = ""
    extra_args: str = ""
    resume_flag: str = ""

    default_model: str = ""

    # Output classification.
    classify_output: bool = True
    # Bracketed marker that ends a thinking block, e.g. "[...] qwen".
    tool_marker: str = "qwen"

    # Session identifiers generated for new sessions: <prefix>_<millis>.
    session_prefix: str = "agent"

    # Timing.
    response_timeout_seconds: float = 60.0
    kill_grace_seconds: float = 2.0
    flush_delay_seconds: float = 0.1
    batch_threshold_chars: int = 100

    # Storage root for sessions and logs.
    home_dir: str = field(
        default_factory=lambda: str(Path.home() / ".agentwire")
    )
    # Per-turn scratch directory, relative to the turn's cwd.
    temp_subdir: str = ".tmp/agent"

    log_level: str = "INFO"

    @property
    def sessions_dir(self) -> Path:
        return Path(self.home_dir).expanduser() / "sessions"

    @property
    def logs_dir(self) -> Path:
        return Path(self.home_dir).expanduser() / "logs"

    @property
    def uses_template(self) -> bool:
        return bool(self.command_template.strip())

    @classmethod
    def from_env(cls) -> AgentConfig:
        """Load configuration from AGENT_* environment variables."""
        agent_vars = sorted(k for k in os.environ if k.startswith("AGENT_"))
        if agent_vars:
            logger.info(
                "AgentConfig.from_env: AGENT_* env overrides: %s",
                ", ".join(agent_vars),
            )
        else:
            logger.debug("AgentConfig.from_env: no AGENT_* env vars set, using defaults")

        defaults = cls()
        config = cls(
            command_template=os.getenv("AGENT_CMD_TEMPLATE", ""),
            shell=os.getenv("AGENT_SHELL", defaults.shell),
            executable=(
                os.getenv("AGENT_BIN")
                or os.getenv("QWEN_PATH")
                or defaults.executable
            ),
            subcommand=os.getenv("AGENT_SUBCOMMAND", ""),
            prompt_flag=os.getenv("AGENT_PROMPT_FLAG", defaults.prompt_flag),
            model_flag=os.getenv("AGENT_MODEL_FLAG", defaults.model_flag),
            skip_permissions_flag=os.getenv("AGENT_SKIP_PERMISSIONS_FLAG", ""),
            image_flag=os.getenv("AGENT_IMAGE_FLAG", ""),
            extra_args=os.getenv("AGENT_EXTRA_ARGS", ""),
            resume_flag=os.getenv("AGENT_RESUME_FLAG", ""),
            default_model=os.getenv("AGENT_DEFAULT_MODEL", ""),
            classify_output=_env_bool(
                "AGENT_CLASSIFY_OUTPUT", defaults.classify_output
            ),
            tool_marker=os.getenv("AGENT_TOOL_MARKER", defaults.tool_marker),
            session_prefix=os.getenv(
                "AGENT_SESSION_PREFIX", defaults.session_prefix
            ),
            response_timeout_seconds=float(os.getenv(
                "AGENT_RESPONSE_TIMEOUT", str(defaults.response_timeout_seconds)
            )),
            kill_grace_seconds=float(os.getenv(
                "AGENT_KILL_GRACE", str(defaults.kill_grace_seconds)
            )),
            flush_delay_seconds=float(os.getenv(
                "AGENT_FLUSH_DELAY", str(defaults.flush_delay_seconds)
            )),
            batch_threshold_chars=int(os.getenv(
                "AGENT_BATCH_CHARS", str(defaults.batch_threshold_chars)
            )),
            home_dir=os.getenv("AGENT_HOME", defaults.home_dir),
            log_level=os.getenv("AGENT_LOG_LEVEL", defaults.log_level),
        )
        logger.info(
            "AgentConfig.from_env: strategy=%s executable=%s timeout=%ss",
            "template" if config.uses_template else "args",
            config.executable,
            config.response_timeout_seconds,
        )
        return config
