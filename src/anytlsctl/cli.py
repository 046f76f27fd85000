"""
Command-line entry point.

One workflow per invocation:

    anytlsctl install [--port N] [--password P] [--mask-domain random|none|DOMAIN]
    anytlsctl export
    anytlsctl restart | stop | repair
    anytlsctl check-update
    anytlsctl upgrade [--reinstall]
    anytlsctl status [--lines N]
    anytlsctl uninstall [--yes]

Mutating workflows run under the InstanceLock. Exit codes: 0 success,
1 workflow failure, 2 usage or configuration error, 75 another run holds
the lock, 77 not running as root.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import random
import sys
from collections.abc import Callable
from typing import Any

import yaml
from pydantic import ValidationError

from anytlsctl import __version__
from anytlsctl.config import AppConfig, load_config
from anytlsctl.errors import (
    InvalidArgumentError,
    LifecycleError,
    LockContentionError,
    PermissionDeniedError,
)
from anytlsctl.export import (
    build_export,
    choose_mask_domain,
    default_profile_name,
    generate_credential,
    get_public_ip,
)
from anytlsctl.lifecycle.lock import InstanceLock
from anytlsctl.lifecycle.state_machine import LifecycleOrchestrator, WorkflowResult
from anytlsctl.lifecycle.store import DEFAULT_PORT, build_service_config
from anytlsctl.logging import get_logger, setup_logging

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_LOCKED = 75  # EX_TEMPFAIL
EXIT_NOPERM = 77  # EX_NOPERM

MUTATING_COMMANDS = {"install", "upgrade", "repair", "restart", "stop", "uninstall"}
UNPRIVILEGED_COMMANDS = {"check-update"}

OrchestratorFactory = Callable[[AppConfig], LifecycleOrchestrator]


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        prog="anytlsctl",
        description="Install, upgrade and supervise an AnyTLS server",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "--config",
        "-c",
        type=str,
        help="Path to configuration file",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["debug", "info", "warning", "error"],
        help="Override log level",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit logs as JSON lines",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print workflow results as JSON",
    )

    sub = parser.add_subparsers(dest="command", metavar="COMMAND")
    sub.required = True

    install = sub.add_parser("install", help="Install (or reinstall) the latest release")
    install.add_argument(
        "--port", type=int, default=DEFAULT_PORT, help="TCP port to listen on"
    )
    install.add_argument(
        "--password",
        type=str,
        default=None,
        help="Client credential (random 32 characters if omitted)",
    )
    install.add_argument(
        "--mask-domain",
        type=str,
        default="random",
        help="'random' for a common domain, 'none' to disable, or a domain name",
    )
    install.add_argument(
        "--seed", type=int, default=None, help="Seed for the random mask-domain choice"
    )

    sub.add_parser("export", help="Print client connection descriptors")
    sub.add_parser("restart", help="Restart the service and verify health")
    sub.add_parser("stop", help="Stop the service")
    sub.add_parser("repair", help="Rewrite settings and unit, restart and verify")
    sub.add_parser("check-update", help="Compare installed and latest versions")

    upgrade = sub.add_parser("upgrade", help="Upgrade to the latest release")
    upgrade.add_argument(
        "--reinstall",
        action="store_true",
        help="Stop the service before replacing the binary",
    )

    status = sub.add_parser("status", help="Show installed version and service state")
    status.add_argument("--lines", type=int, default=80, help="Journal lines to show")

    uninstall = sub.add_parser("uninstall", help="Remove AnyTLS and its configuration")
    uninstall.add_argument("--yes", "-y", action="store_true", help="Do not prompt")

    return parser


def ensure_root() -> None:
    """
    Raises:
        PermissionDeniedError: If not running with effective UID 0.
    """
    if os.geteuid() != 0:
        raise PermissionDeniedError(
            "This command must be run as root",
            details={"euid": os.geteuid()},
        )


def resolve_mask_domain(value: str, rng: random.Random) -> str:
    """Map the --mask-domain argument to a stored value."""
    choice = value.strip()
    if choice.lower() == "random":
        return choose_mask_domain(rng)
    if choice.lower() in ("none", ""):
        return ""
    return choice


def _confirm_uninstall() -> bool:
    try:
        answer = input("This removes AnyTLS, its settings and backups. Continue? [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in ("y", "yes")


def _emit_result(result: WorkflowResult, as_json: bool) -> int:
    if as_json:
        print(result.model_dump_json(indent=2))
    else:
        print(result.message)
    return EXIT_OK if result.ok else EXIT_FAILURE


def _emit(payload: dict[str, Any], text: str, as_json: bool) -> None:
    if as_json:
        print(json.dumps(payload, indent=2))
    else:
        print(text, end="" if text.endswith("\n") else "\n")


async def _export(orchestrator: LifecycleOrchestrator, as_json: bool) -> int:
    if not orchestrator.store.exists():
        raise InvalidArgumentError(
            "No stored connection settings; run install first",
            details={"path": str(orchestrator.store.path)},
        )
    config = orchestrator.store.read()
    host = await get_public_ip()
    export = build_export(config, host, default_profile_name())
    _emit(
        {
            "uri": export.uri,
            "surge": export.surge_line,
            "fields": dict(export.fields),
        },
        export.render(),
        as_json,
    )
    return EXIT_OK


async def _status(orchestrator: LifecycleOrchestrator, lines: int, as_json: bool) -> int:
    report = await orchestrator.status(log_lines=lines)
    listening = {True: "yes", False: "no", None: "unknown"}[report.port_listening]
    text = (
        f"Installed version: {report.installed_version or 'not installed'}\n"
        f"Port: {report.port if report.port is not None else 'unknown'}\n"
        f"Mask domain: {report.mask_domain or '(none)'}\n"
        f"Active: {'yes' if report.active else 'no'}\n"
        f"Port listening: {listening}\n"
        "\n"
        f"{report.service_status}\n"
        f"{report.logs}"
    )
    _emit(report.model_dump(), text, as_json)
    return EXIT_OK


async def run_command(
    args: argparse.Namespace,
    orchestrator: LifecycleOrchestrator,
) -> int:
    """Dispatch one parsed command to the orchestrator."""
    command = args.command
    as_json = args.json

    if command == "install":
        rng = random.Random(args.seed)
        service_config = build_service_config(
            args.port,
            args.password if args.password is not None else generate_credential(),
            resolve_mask_domain(args.mask_domain, rng),
        )
        return _emit_result(await orchestrator.install(service_config), as_json)
    if command == "upgrade":
        return _emit_result(await orchestrator.upgrade(reinstall=args.reinstall), as_json)
    if command == "check-update":
        return _emit_result(await orchestrator.check_update(), as_json)
    if command == "repair":
        return _emit_result(await orchestrator.repair(), as_json)
    if command == "restart":
        return _emit_result(await orchestrator.restart(), as_json)
    if command == "stop":
        return _emit_result(await orchestrator.stop(), as_json)
    if command == "uninstall":
        confirmed = args.yes or _confirm_uninstall()
        return _emit_result(await orchestrator.uninstall(confirmed=confirmed), as_json)
    if command == "export":
        return await _export(orchestrator, as_json)
    if command == "status":
        return await _status(orchestrator, args.lines, as_json)

    raise InvalidArgumentError(f"Unknown command: {command}")


def exit_code_for(error: LifecycleError) -> int:
    """Map an error to a process exit code."""
    if isinstance(error, LockContentionError):
        return EXIT_LOCKED
    if isinstance(error, PermissionDeniedError):
        return EXIT_NOPERM
    if isinstance(error, InvalidArgumentError):
        return EXIT_USAGE
    return EXIT_FAILURE


def main(
    argv: list[str] | None = None,
    *,
    orchestrator_factory: OrchestratorFactory | None = None,
) -> int:
    """
    Run the command line.

    Args:
        argv: Arguments without the program name; defaults to sys.argv.
        orchestrator_factory: Builds the orchestrator from configuration
            (tests inject fakes here).

    Returns:
        Process exit code.
    """
    args = build_parser().parse_args(argv)

    overrides: dict[str, Any] = {}
    if args.log_level:
        overrides["logging"] = {"level": args.log_level}
    if args.json_logs:
        overrides.setdefault("logging", {})["json_format"] = True

    try:
        config = load_config(args.config, overrides=overrides)
    except (FileNotFoundError, ValidationError, yaml.YAMLError) as e:
        print(f"error: invalid configuration: {e}", file=sys.stderr)
        return EXIT_USAGE

    setup_logging(config.logging)
    factory = orchestrator_factory or LifecycleOrchestrator.from_config

    try:
        if args.command not in UNPRIVILEGED_COMMANDS:
            ensure_root()
        orchestrator = factory(config)
        if args.command in MUTATING_COMMANDS:
            with InstanceLock(config.paths.lock_path):
                return asyncio.run(run_command(args, orchestrator))
        return asyncio.run(run_command(args, orchestrator))
    except LifecycleError as e:
        logger.debug("Command failed", extra={"error": e.to_dict()})
        print(f"error: {e.message}", file=sys.stderr)
        return exit_code_for(e)
    except KeyboardInterrupt:
        print("interrupted", file=sys.stderr)
        return 130


if __name__ == "__main__":
    sys.exit(main())
