"""
stooge - run shell commands when a webhook arrives.
Command-line entry point.
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

from dotenv import load_dotenv

from core.config import ConfigError, load_config, parse_port
from core.lifecycle import LifecycleController, SetupError
from core.observability import configure_logging, logger
from core.registry import CommandRegistry
from core.spawner import CommandSpawner
from core.workspace import working_directory
from webhook.server import WebhookAcceptor, create_app

__version__ = "0.1.0"
PROG = "stooge"


def _port_arg(value: str) -> int:
    try:
        return parse_port(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog=PROG,
        description="Listen for and respond to GitHub webhooks.",
    )
    parser.add_argument(
        "-v",
        "--version",
        action="version",
        version=f"{PROG} {__version__}",
        help="print version and exit",
    )
    parser.add_argument(
        "-p",
        "--port",
        type=_port_arg,
        metavar="PORT",
        help="listen on PORT (default: 5000)",
    )
    parser.add_argument(
        "--host",
        metavar="HOST",
        help="bind to HOST (default: 0.0.0.0)",
    )
    parser.add_argument(
        "-C",
        "--dir",
        metavar="DIR",
        help="change to DIR before doing anything",
    )
    parser.add_argument(
        "-e",
        "--cmd",
        action="append",
        metavar="CMD",
        dest="commands",
        help="run CMD as a single-line script (repeatable)",
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        metavar="PATH",
        help="read settings from a YAML file (default: ./.stooge.yml if present)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        type=str.upper,
        help="logging verbosity (default: INFO)",
    )
    return parser


def resolve_settings(args: argparse.Namespace) -> dict:
    """Merge file/env configuration with command-line options."""
    config = load_config(args.config)
    if args.host:
        config["host"] = args.host
    if args.port is not None:
        config["port"] = args.port
    if args.dir:
        config["dir"] = args.dir
    if args.commands:
        config["commands"] = list(args.commands)
    if args.log_level:
        config["log_level"] = args.log_level
    return config


def serve(config: dict) -> int:
    """Serve webhooks with `config` until a shutdown signal. Returns the exit code."""
    registry = CommandRegistry(config["commands"])
    spawner = CommandSpawner(registry, shell=config["shell"])
    app = create_app(spawner, secret=config["secret"])
    acceptor = WebhookAcceptor(app, config["host"], config["port"])
    controller = LifecycleController(acceptor, reaper=spawner)

    try:
        with working_directory(config["dir"]) as cwd:
            logger.info(
                f"Starting on {config['host']}:{config['port']} in {cwd} "
                f"with {registry.count()} command(s)"
            )
            if config["secret"]:
                logger.info("Webhook signature verification enabled")
            clean = controller.run()
    except SetupError as e:
        print(f"{PROG}: {e}", file=sys.stderr)
        return 1
    except OSError as e:
        target = config["dir"] if e.filename else f"{config['host']}:{config['port']}"
        print(f"{PROG}: {target}: {e.strerror or e}", file=sys.stderr)
        return 1

    return 0 if clean else 1


def main(argv: list[str] | None = None) -> int:
    load_dotenv()

    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = resolve_settings(args)
    except ConfigError as e:
        print(f"{PROG}: config error: {e}", file=sys.stderr)
        return 1

    configure_logging(config["log_level"])
    return serve(config)


if __name__ == "__main__":
    sys.exit(main())
