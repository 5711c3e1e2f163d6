"""CLI entry point for agentlink.

Provides ``agentlink chat`` and ``agentlink serve`` subcommands.

Flag overrides are written to the environment before ``load_config()`` runs,
so flags beat env files, and nothing reads settings until both are applied.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path


def main(argv: list[str] | None = None) -> None:
    """Main CLI entry point (``agentlink`` command)."""
    parser = argparse.ArgumentParser(
        prog="agentlink",
        description="agentlink: streaming console for remote coding agents",
    )
    parser.add_argument(
        "--env-file",
        help="Extra env file with AGENTLINK_* settings; beats .env and the user config",
    )
    sub = parser.add_subparsers(dest="command")

    # agentlink chat
    chat_parser = sub.add_parser("chat", help="Open an operator console for an agent")
    chat_parser.add_argument("agent_id", help="Agent to talk to")
    chat_parser.add_argument("--url", help="Agent server base URL")
    chat_parser.add_argument("--workspace", help="Workspace id")
    chat_parser.add_argument("--model", help="Model name sent with every command")

    # agentlink serve
    serve_parser = sub.add_parser("serve", help="Run the conversation store service")
    serve_parser.add_argument("--host", help="Host to bind to")
    serve_parser.add_argument("--port", type=int, help="Port to bind to")

    args = parser.parse_args(argv)
    if args.env_file and not Path(args.env_file).expanduser().is_file():
        parser.error(f"env file not found: {args.env_file}")

    if args.command == "chat":
        _run_chat(args)
    elif args.command == "serve":
        _run_serve(args)
    else:
        parser.print_help()
        sys.exit(1)


def _apply(args: argparse.Namespace, overrides: dict[str, object]) -> list[Path]:
    """Export flag values, then fill the rest from env files."""
    for key, value in overrides.items():
        if value:
            os.environ[key] = str(value)

    from agentlink.config import load_config

    return load_config(args.env_file)


def _run_chat(args: argparse.Namespace) -> None:
    """Handle ``agentlink chat``."""
    env_files = _apply(
        args,
        {
            "AGENTLINK_AGENT_URL": args.url,
            "AGENTLINK_WORKSPACE_ID": args.workspace,
            "AGENTLINK_MODEL": args.model,
        },
    )

    import structlog

    from agentlink.console import run_console
    from agentlink.log_config import configure_logging

    configure_logging(stream=sys.stderr)
    structlog.get_logger("agentlink.cli").debug(
        "Configuration loaded", env_files=[str(path) for path in env_files]
    )
    try:
        asyncio.run(run_console(args.agent_id))
    except KeyboardInterrupt:
        pass


def _run_serve(args: argparse.Namespace) -> None:
    """Handle ``agentlink serve``."""
    _apply(args, {"AGENTLINK_HOST": args.host, "AGENTLINK_PORT": args.port})

    from agentlink.server import run

    run()


if __name__ == "__main__":
    main()
