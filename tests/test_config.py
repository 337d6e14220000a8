import logging
from pathlib import Path

import pytest

from agentwire.engine.command_builder import split_args
from agentwire.engine.config import AgentConfig, fire_event
from agentwire.engine.yaml_config import load_yaml_config


def test_from_env_defaults(monkeypatch) -> None:
    for key in ("AGENT_BIN", "QWEN_PATH", "AGENT_CMD_TEMPLATE", "AGENT_PROMPT_FLAG"):
        monkeypatch.delenv(key, raising=False)

    config = AgentConfig.from_env()

    assert config.executable == "qwen"
    assert config.prompt_flag == "--prompt"
    assert config.response_timeout_seconds == 60.0
    assert config.kill_grace_seconds == 2.0
    assert config.flush_delay_seconds == 0.1
    assert config.batch_threshold_chars == 100
    assert not config.uses_template


def test_from_env_overrides(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.delenv("AGENT_BIN", raising=False)
    monkeypatch.setenv("QWEN_PATH", "/opt/qwen/bin/qwen")
    monkeypatch.setenv("AGENT_PROMPT_FLAG", "")
    monkeypatch.setenv("AGENT_RESPONSE_TIMEOUT", "90")
    monkeypatch.setenv("AGENT_CLASSIFY_OUTPUT", "false")
    monkeypatch.setenv("AGENT_CMD_TEMPLATE", "qwen -p \"$(cat {prompt_file})\"")
    monkeypatch.setenv("AGENT_HOME", str(tmp_path))

    config = AgentConfig.from_env()

    assert config.executable == "/opt/qwen/bin/qwen"
    assert config.prompt_flag == ""
    assert config.response_timeout_seconds == 90.0
    assert config.classify_output is False
    assert config.uses_template
    assert config.sessions_dir == tmp_path / "sessions"
    assert config.logs_dir == tmp_path / "logs"


def test_agent_bin_wins_over_qwen_path(monkeypatch) -> None:
    monkeypatch.setenv("AGENT_BIN", "codex")
    monkeypatch.setenv("QWEN_PATH", "qwen")

    assert AgentConfig.from_env().executable == "codex"


def test_yaml_overlays_base_config(tmp_path: Path) -> None:
    path = tmp_path / "agentwire.yaml"
    path.write_text(
        "agent:\n"
        "  executable: codex\n"
        "  subcommand: exec\n"
        "  prompt_flag: ''\n"
        "  extra_args: ['--skip-git-repo-check', 'two words']\n"
        "  response_timeout_seconds: 90\n"
        "  classify_output: 'no'\n"
        "  batch_threshold_chars: 250\n"
        "storage:\n"
        f"  home_dir: {tmp_path / 'home'}\n",
        encoding="utf-8",
    )

    config = load_yaml_config(path, base=AgentConfig())

    assert config.executable == "codex"
    assert config.subcommand == "exec"
    assert config.prompt_flag == ""
    assert split_args(config.extra_args) == ["--skip-git-repo-check", "two words"]
    assert config.response_timeout_seconds == 90.0
    assert config.classify_output is False
    assert config.batch_threshold_chars == 250
    assert config.home_dir == str(tmp_path / "home")


def test_yaml_unknown_keys_are_warned_and_ignored(tmp_path: Path, caplog) -> None:
    path = tmp_path / "agentwire.yaml"
    path.write_text("agent:\n  nonsense: 1\n  shell: zsh\n", encoding="utf-8")

    with caplog.at_level(logging.WARNING):
        config = load_yaml_config(path, base=AgentConfig())

    assert config.shell == "zsh"
    assert not hasattr(config, "nonsense")
    assert "nonsense" in caplog.text


def test_yaml_must_be_a_mapping(tmp_path: Path) -> None:
    path = tmp_path / "agentwire.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")

    with pytest.raises(ValueError):
        load_yaml_config(path, base=AgentConfig())


def test_missing_yaml_raises(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        load_yaml_config(tmp_path / "absent.yaml", base=AgentConfig())


@pytest.mark.asyncio
async def test_fire_event_swallows_sink_errors(caplog) -> None:
    async def broken_sink(event) -> None:
        raise RuntimeError("sink down")

    with caplog.at_level(logging.WARNING):
        await fire_event(broken_sink, {"event": "content"})
        await fire_event(None, {"event": "content"})

    assert "Event sink raised" in caplog.text
