"""
Command-line interface for the autopilot.

Exit codes:
    0  success, including "no projects registered"
    1  fatal startup error (configuration, registry)
    2  usage or operator error (unknown project, invalid transition)
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, List, Optional

from . import __version__
from .config import ConfigError, load_config
from .orchestrator import ShutdownToken, install_signal_handlers
from .project_registry import RegistryCorruptError, RegistryError
from .runtime import Runtime, build_runtime

logger = logging.getLogger("autopilot_cli")

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_USAGE = 2

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(verbose: bool = False, log_file: Optional[str] = None) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
    )
    if log_file:
        handler = logging.FileHandler(Path(log_file).expanduser())
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logging.getLogger().addHandler(handler)
    logging.getLogger("httpx").setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="autopilot", description="Supervise AI coding sessions")
    parser.add_argument("--config", help="Autopilot YAML configuration (default: $AUTOPILOT_CONFIG)")
    parser.add_argument("--state-dir", help="Override the state directory")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    commands = parser.add_subparsers(dest="command", required=True)

    register = commands.add_parser("register", help="Register a project from its YAML file")
    register.add_argument("project_config", help="Path to the project YAML file")
    register.add_argument("--name", help="Override the project name")

    unregister = commands.add_parser("unregister", help="Remove a project from the registry")
    unregister.add_argument("name")

    listing = commands.add_parser("list", help="List registered projects")
    listing.add_argument("--status", choices=["active", "paused", "quarantined", "complete"])
    listing.add_argument("--json", action="store_true", dest="as_json")

    status = commands.add_parser("status", help="Show one project, or the whole installation")
    status.add_argument("name", nargs="?")

    for verb, text in (("pause", "Pause a project"), ("resume", "Resume a paused project"),
                       ("reset", "Return a quarantined project to active")):
        sub = commands.add_parser(verb, help=text)
        sub.add_argument("name")

    approve = commands.add_parser("approve", help="Approve a phase that requires approval")
    approve.add_argument("name")
    approve.add_argument("phase", nargs="?", help="Defaults to the current phase")

    history = commands.add_parser("history", help="Show recent decisions for a project")
    history.add_argument("name")
    history.add_argument("-n", "--limit", type=int, default=20)

    run = commands.add_parser("run", help="Run the scheduling loop")
    run.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    run.add_argument("--max-cycles", type=int)
    run.add_argument("--force-recovery", action="store_true",
                     help="Accept a recovery snapshot older than the configured max age")

    serve = commands.add_parser("serve", help="Serve the operator API (and run the loop)")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8420)
    serve.add_argument("--no-orchestrator", action="store_true", help="API only")
    serve.add_argument("--force-recovery", action="store_true")

    credential = commands.add_parser("set-credential", help="Store or rotate the reasoning API key")
    credential.add_argument("api_key", nargs="?", help="Read from stdin when omitted")

    limits = commands.add_parser("set-limits", help="Set reasoning spend limits (USD)")
    limits.add_argument("--daily", type=float)
    limits.add_argument("--weekly", type=float)
    limits.add_argument("--project-daily", type=float)

    return parser


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


# -----------------------------------------------------------------------------
# Commands
# -----------------------------------------------------------------------------
def _cmd_register(runtime: Runtime, args: argparse.Namespace) -> int:
    record = runtime.register_project(Path(args.project_config), args.name)
    print(f"Registered {record.name} (phase: {record.current_phase})")
    return EXIT_OK


def _cmd_unregister(runtime: Runtime, args: argparse.Namespace) -> int:
    runtime.registry.unregister_project(args.name)
    print(f"Unregistered {args.name}")
    return EXIT_OK


def _cmd_list(runtime: Runtime, args: argparse.Namespace) -> int:
    projects = runtime.registry.list_projects(status=args.status)
    if args.as_json:
        _print_json([p.to_dict() for p in projects])
        return EXIT_OK
    if not projects:
        print("No projects registered.")
        return EXIT_OK
    for p in projects:
        errors = f" errors={p.consecutive_error_count}" if p.consecutive_error_count else ""
        print(f"{p.name:<24} {p.status:<12} phase={p.current_phase}{errors}")
    return EXIT_OK


def _cmd_status(runtime: Runtime, args: argparse.Namespace) -> int:
    if args.name:
        record = runtime.registry.require_project(args.name)
        _print_json({"project": record.to_dict(), "state": runtime.store.load_state(args.name)})
        return EXIT_OK

    counts = runtime.registry.get_project_count()
    if counts["total"] == 0:
        print("No projects registered.")
    _print_json({
        "projects": counts,
        "cost": runtime.governor.summary(),
        "credential": runtime.credentials.info(),
    })
    return EXIT_OK


def _cmd_transition(runtime: Runtime, args: argparse.Namespace) -> int:
    action = {
        "pause": runtime.registry.pause_project,
        "resume": runtime.registry.resume_project,
        "reset": runtime.registry.reset_project,
    }[args.command]
    record = action(args.name)
    print(f"{record.name}: {record.status}")
    return EXIT_OK


def _cmd_approve(runtime: Runtime, args: argparse.Namespace) -> int:
    record = runtime.registry.require_project(args.name)
    phase = args.phase or record.current_phase
    runtime.registry.approve_phase(args.name, phase)
    print(f"Approved phase '{phase}' for {args.name}")
    return EXIT_OK


def _cmd_history(runtime: Runtime, args: argparse.Namespace) -> int:
    runtime.registry.require_project(args.name)
    entries = runtime.store.recent_entries(args.name, args.limit)
    if not entries:
        print(f"No decisions recorded for {args.name}.")
        return EXIT_OK
    for entry in entries:
        decision = entry.get("decision", {})
        result = entry.get("result") or {}
        outcome = "ok" if result.get("success") else "FAILED"
        print(
            f"{decision.get('timestamp', '?')}  {decision.get('state', '?'):<16} "
            f"{decision.get('action', '?'):<16} {outcome:<6} {decision.get('reasoning', '')}"
        )
    return EXIT_OK


def _cmd_run(runtime: Runtime, args: argparse.Namespace) -> int:
    if runtime.registry.get_project_count()["total"] == 0:
        print("No projects registered. Use 'autopilot register <project.yaml>' first.")
        return EXIT_OK

    max_cycles = 1 if args.once else args.max_cycles

    async def run() -> int:
        token = ShutdownToken()
        install_signal_handlers(token)
        return await runtime.orchestrator.run(
            token, max_cycles=max_cycles, force_recovery=args.force_recovery,
        )

    cycles = asyncio.run(run())
    print(f"Stopped after {cycles} cycle(s)")
    return EXIT_OK


def _cmd_serve(runtime: Runtime, args: argparse.Namespace) -> int:
    import uvicorn

    from .api import create_app

    app = create_app(
        runtime,
        run_orchestrator=not args.no_orchestrator,
        force_recovery=args.force_recovery,
    )
    uvicorn.run(app, host=args.host, port=args.port, log_config=None)
    return EXIT_OK


def _cmd_set_credential(runtime: Runtime, args: argparse.Namespace) -> int:
    api_key = args.api_key or sys.stdin.readline().strip()
    info = runtime.credentials.set(api_key)
    print(f"Credential stored ({info['fingerprint']})")
    return EXIT_OK


def _cmd_set_limits(runtime: Runtime, args: argparse.Namespace) -> int:
    if args.daily is None and args.weekly is None and args.project_daily is None:
        print("Nothing to change: pass --daily, --weekly and/or --project-daily", file=sys.stderr)
        return EXIT_USAGE
    limits = runtime.governor.update_limits(
        daily_limit_usd=args.daily,
        weekly_limit_usd=args.weekly,
        project_daily_limit_usd=args.project_daily,
    )
    _print_json(limits)
    return EXIT_OK


COMMANDS = {
    "register": _cmd_register,
    "unregister": _cmd_unregister,
    "list": _cmd_list,
    "status": _cmd_status,
    "pause": _cmd_transition,
    "resume": _cmd_transition,
    "reset": _cmd_transition,
    "approve": _cmd_approve,
    "history": _cmd_history,
    "run": _cmd_run,
    "serve": _cmd_serve,
    "set-credential": _cmd_set_credential,
    "set-limits": _cmd_set_limits,
}


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_config(Path(args.config) if args.config else None)
        if args.state_dir:
            state_dir = Path(args.state_dir).expanduser()
            sessions_dir = config.sessions_dir
            if sessions_dir == config.state_dir / "sessions":
                sessions_dir = state_dir / "sessions"
            config = config.model_copy(update={"state_dir": state_dir, "sessions_dir": sessions_dir})
    except ConfigError as e:
        print(f"Configuration error: {e.message}", file=sys.stderr)
        return EXIT_FATAL

    configure_logging(args.verbose, config.orchestrator.log_file)

    try:
        runtime = build_runtime(config)
    except RegistryCorruptError as e:
        print(f"Fatal: {e.message}", file=sys.stderr)
        return EXIT_FATAL
    except ConfigError as e:
        print(f"Configuration error: {e.message}", file=sys.stderr)
        return EXIT_FATAL

    try:
        return COMMANDS[args.command](runtime, args)
    except ConfigError as e:
        print(f"Configuration error: {e.message}", file=sys.stderr)
        return EXIT_USAGE
    except RegistryError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return EXIT_USAGE
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_USAGE
