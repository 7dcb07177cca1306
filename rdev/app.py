"""Remote Dev CLI: main application entry point."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from rich.console import Console

from rdev import __version__
from rdev.engine.config import AgentConfig, ClientConfig, load_env_file
from rdev.engine.errors import ConfigError, RemoteDevError
from rdev.engine.orchestrator import ProcessOrchestrator, default_console
from rdev.engine.providers.gemini_provider import GeminiProvider
from rdev.engine.repository import RepositoryManager
from rdev.engine.yaml_config import discover_config_path, load_yaml_config

LOG_DIR = Path.home() / ".remote-dev" / "logs"
LOG_FILE_NAME = "agent-server.log"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"


def configure_logging(level: str, log_file: Path | None = None) -> None:
    """Configure the root logger: stderr, plus a rotating file when given."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(LOG_FORMAT)
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)


def load_config(args: argparse.Namespace) -> AgentConfig:
    """Resolve configuration: .env, then environment, then YAML, then flags."""
    load_env_file(args.env_file)
    config = AgentConfig.from_env()

    config_path = Path(args.config) if args.config else discover_config_path()
    if config_path is not None:
        config = load_yaml_config(config_path, base=config)

    if args.host:
        config.host = args.host
    if args.port is not None:
        config.port = args.port
    return config


def build_orchestrator(config: AgentConfig, console: Console | None = None) -> ProcessOrchestrator:
    provider = GeminiProvider(
        command=config.tool_command,
        args=config.tool_args,
        noise_patterns=config.noise_patterns,
    )
    return ProcessOrchestrator(
        provider,
        probe_timeout_seconds=config.probe_timeout_seconds,
        kill_grace_seconds=config.kill_grace_seconds,
        console=console,
    )


def build_repositories(config: AgentConfig) -> RepositoryManager:
    return RepositoryManager(
        config.repos_dir,
        git_host=config.git_host,
        author_name=config.commit_author_name,
        author_email=config.commit_author_email,
    )


def build_server(config: AgentConfig, console: Console | None = None):
    """Wire the engines, handler table and server together."""
    from rdev.server.handlers import build_handlers
    from rdev.server.server import AgentServer

    orchestrator = build_orchestrator(config, console)
    repositories = build_repositories(config)
    handlers = build_handlers(orchestrator, repositories, config)
    return AgentServer(config, handlers, orchestrator=orchestrator)


async def _run_check(config: AgentConfig) -> int:
    orchestrator = build_orchestrator(config)
    available = await orchestrator.is_available()
    console = Console()
    status = "[green]available[/green]" if available else "[red]not found[/red]"
    console.print(f"Tool: {config.tool_command} {status}")
    console.print(f"Repos dir: {config.repos_dir}", highlight=False)
    return 0 if available else 1


async def _run_call(kind: str, payload_raw: str, url: str | None) -> int:
    from rdev.client.connection import ClientConnection

    try:
        payload = json.loads(payload_raw) if payload_raw else {}
    except ValueError as exc:
        print(f"Invalid --payload JSON: {exc}", file=sys.stderr)
        return 2
    if not isinstance(payload, dict):
        print("--payload must be a JSON object", file=sys.stderr)
        return 2

    client_config = ClientConfig.from_env()
    if url:
        client_config.url = url
    # One-shot calls do not reconnect.
    client_config.max_reconnect_attempts = 0

    console = Console(stderr=True)

    def _progress(event) -> None:
        if isinstance(event, dict) and "text" in event:
            console.out(event["text"], end="", highlight=False)
        else:
            console.print(f"[dim]progress[/dim] {json.dumps(event)}", highlight=False)

    client = ClientConnection(client_config)
    try:
        await client.connect()
        await client.wait_until_authenticated()
        result = await client.request(kind, payload, on_progress=_progress)
    except RemoteDevError as exc:
        console.print(f"[red]{type(exc).__name__}:[/red] {exc}", highlight=False)
        return 1
    finally:
        await client.disconnect()

    print(json.dumps(result, indent=2))
    return 0


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="rdev",
        description="Remote Dev agent: drive an AI coding tool and git working copies over a WebSocket",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--host", metavar="HOST", help="Bind address (default: HOST or 0.0.0.0)")
    parser.add_argument("--port", type=int, default=None, help="Listen port (default: PORT or 3001)")
    parser.add_argument(
        "--config", metavar="PATH",
        help="YAML config file (default: ./rdev.yaml when present)",
    )
    parser.add_argument("--env-file", metavar="PATH", help="Load environment variables from this file")
    parser.add_argument(
        "--check", action="store_true",
        help="Report tool availability and the repositories root, then exit",
    )
    parser.add_argument("--call", metavar="KIND", help="Send one request to a running agent and print the result")
    parser.add_argument("--payload", metavar="JSON", default="{}", help="JSON payload for --call")
    parser.add_argument("--url", metavar="URL", help="Agent URL for --call (default: RDEV_SERVER_URL)")
    args = parser.parse_args()

    if args.call:
        load_env_file(args.env_file)
        configure_logging("WARNING")
        sys.exit(asyncio.run(_run_call(args.call, args.payload, args.url)))

    try:
        config = load_config(args)
    except (ConfigError, FileNotFoundError) as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        sys.exit(1)

    if args.check:
        configure_logging(config.log_level)
        sys.exit(asyncio.run(_run_check(config)))

    log_file = LOG_DIR / LOG_FILE_NAME
    configure_logging(config.log_level, log_file)
    logger = logging.getLogger(__name__)

    try:
        config.validate()
    except ConfigError as exc:
        logger.error("%s", exc)
        print(f"Configuration error: {exc}", file=sys.stderr)
        sys.exit(1)

    logger.info(
        "Starting Remote Dev server host=%s port=%s repos_dir=%s log=%s",
        config.host, config.port, config.repos_dir, log_file,
    )
    server = build_server(config, console=default_console())
    try:
        asyncio.run(server.serve_forever())
    except KeyboardInterrupt:
        pass
    sys.exit(0)


if __name__ == "__main__":
    main()
