"""agentwire entry point: server mode and session listing."""

from __future__ import annotations

import asyncio
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from agentwire.engine.config import AgentConfig


def _configure_logging(config: AgentConfig) -> Path:
    """Root logger to a rotating file under <home>/logs plus stderr."""
    log_dir = config.logs_dir
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "agentwire.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return log_file


def _load_config(config_path: str | None) -> AgentConfig:
    config = AgentConfig.from_env()
    if not config_path:
        auto_yaml = Path.cwd() / "agentwire.yaml"
        if auto_yaml.exists():
            config_path = str(auto_yaml)
    if config_path:
        from agentwire.engine.yaml_config import load_yaml_config

        config = load_yaml_config(config_path, base=config)
    return config


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="agentwire",
        description="agentwire - streaming bridge for agent command-line tools",
    )
    parser.add_argument(
        "--server", action="store_true",
        help="Run the HTTP + SSE server",
    )
    parser.add_argument(
        "--host", default="127.0.0.1",
        help="Server bind address (default: 127.0.0.1)",
    )
    parser.add_argument(
        "--port", type=int, default=0,
        help="Server port (default: pick a free port)",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file (default: ./agentwire.yaml if present)",
    )
    parser.add_argument(
        "--list", action="store_true",
        help="List saved sessions and exit",
    )
    args = parser.parse_args()

    config = _load_config(args.config)

    if args.list:
        from agentwire.shared.services.persistence import SessionRegistry

        registry = SessionRegistry(config.sessions_dir)
        sessions = registry.list_sessions()
        if not sessions:
            print("No saved sessions.")
        else:
            for session_id in sessions:
                print(f"  {session_id}")
        sys.exit(0)

    if args.server:
        from agentwire.server import AgentWireServer

        log_file = _configure_logging(config)
        logging.getLogger(__name__).info(
            "Starting agentwire server cwd=%s port=%s config=%s log=%s",
            Path.cwd(),
            args.port,
            args.config or "<none>",
            log_file,
        )
        server = AgentWireServer(config, host=args.host, port=args.port)
        try:
            asyncio.run(server.serve_forever())
        except KeyboardInterrupt:
            pass
        sys.exit(0)

    parser.print_help()
    print("\nTo run a single turn from the terminal, use agentwire-turn.")
    sys.exit(2)


if __name__ == "__main__":
    main()
