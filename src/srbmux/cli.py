#!/usr/bin/env python3
"""CLI for inspecting and running Sorbet language server sessions."""

import argparse
import json
import logging
import os
import shutil
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path

import anyio

from . import __version__
from .command import build_command, format_command
from .config import SorbetConfig, load_config, settings_path
from .errors import ConfigError, EscapingFailure
from .events import StartSession
from .launcher import ExitStatus, LoginShell, login_shell_command, select_strategy
from .mux import Multiplexer
from .router import plan_document_opened
from .workspace import Workspace, WorkspaceFolderResolver, document_for_path

logger = logging.getLogger(__name__)


@dataclass
class DoctorStatus:
    """Resolved launch strategy and executable availability."""

    platform: str
    shell: str | None
    strategy: str
    command: list[str]
    executable: str | None
    available: bool
    reason: str | None = None


def _probe_login_shell(shell_path: str, name: str) -> str | None:
    """Ask the login shell where it would find ``name``."""
    try:
        script = login_shell_command(["command", "-v", name], None)
    except EscapingFailure:
        return None
    try:
        completed = subprocess.run(
            [shell_path, "-l", "-c", script],
            capture_output=True,
            text=True,
            check=False,
            timeout=5.0,
        )
    except (OSError, subprocess.TimeoutExpired):
        return None
    if completed.returncode != 0:
        return None
    lines = [line.strip() for line in completed.stdout.splitlines() if line.strip()]
    return lines[-1] if lines else None


def _doctor_status(config: SorbetConfig) -> DoctorStatus:
    command = build_command(config)
    shell = os.environ.get("SHELL")
    strategy = select_strategy(sys.platform, shell)

    if isinstance(strategy, LoginShell):
        executable = _probe_login_shell(strategy.shell_path, command[0])
        reason = None if executable else f"{command[0]} not found in {strategy.shell_path} login shell"
        strategy_name = f"login-shell ({strategy.shell_path})"
    else:
        executable = shutil.which(command[0])
        reason = None if executable else f"{command[0]} not found on PATH"
        strategy_name = "direct-exec"

    return DoctorStatus(
        platform=sys.platform,
        shell=shell,
        strategy=strategy_name,
        command=command,
        executable=executable,
        available=executable is not None,
        reason=reason,
    )


def _print_doctor(status: DoctorStatus, as_json: bool) -> None:
    if as_json:
        print(json.dumps(status.__dict__, indent=2))
        return

    state = "OK" if status.available else "MISSING"
    print("srbmux doctor")
    print(f"platform: {status.platform}")
    print(f"shell:    {status.shell or '<unset>'}")
    print(f"strategy: {status.strategy}")
    print(f"[{state}] {format_command(status.command)}")
    if status.executable:
        print(f"      executable: {status.executable}")
    elif status.reason:
        print(f"      note: {status.reason}")


def _print_command(config: SorbetConfig, workspace: Path | None, as_json: bool) -> None:
    command = build_command(config)
    if as_json:
        payload = {"config": config.as_dict(), "command": command}
        if workspace is not None:
            payload["settings_path"] = str(settings_path(workspace))
        print(json.dumps(payload, indent=2))
        return
    print(format_command(command))


def _print_plan(roots: list[str], files: list[str], as_json: bool) -> None:
    workspace = Workspace.from_paths(roots)
    resolver = WorkspaceFolderResolver(workspace)

    routes: dict[str, str | None] = {}
    sessions: list[str] = []
    for path in files:
        commands = plan_document_opened(document_for_path(path), workspace, resolver)
        starts = [c for c in commands if isinstance(c, StartSession)]
        routes[path] = starts[0].root.uri if starts else None
        for start in starts:
            if start.root.uri not in sessions:
                sessions.append(start.root.uri)

    if as_json:
        print(json.dumps({"routes": routes, "sessions": sessions}, indent=2))
        return

    for path, root in routes.items():
        print(f"{path} -> {root or '<ignored>'}")
    print(f"\n{len(sessions)} session(s):")
    for uri in sessions:
        print(f"  - {uri}")


async def _run(roots: list[str], files: list[str], config: SorbetConfig) -> int:
    workspace = Workspace.from_paths(roots)

    async with Multiplexer(workspace, config, shutdown_timeout=config.stop_timeout) as mux:
        if files:
            await mux.open_documents(document_for_path(path) for path in files)
        else:
            resolver = mux.router.resolver
            await mux.router.execute(
                StartSession(resolver.outermost(folder)) for folder in workspace.workspace_folders
            )

        if not len(mux.registry):
            print("No sessions started.", file=sys.stderr)
            return 1

        for session in mux.registry:
            print(f"session {session.root.uri} pid={session.process.pid if session.process else None}")

        # Sessions are not restarted; leave once every server has exited.
        while any(session.alive for session in mux.registry):
            await anyio.sleep(1.0)
        sessions = list(mux.registry)

    return 0 if all(_exited_cleanly(session.exit_status) for session in sessions) else 1


def _exited_cleanly(status: ExitStatus | None) -> bool:
    return status is not None and not status.failed_to_launch and status.returncode == 0


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Run one Sorbet language server per outermost workspace root"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="More logging")
    parser.add_argument(
        "--workspace",
        help="Directory holding .srbmux/settings.json (default: first root)",
    )
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    command_parser = subparsers.add_parser("command", help="Print the language server command")
    command_parser.add_argument("--json", action="store_true", help="Output as JSON")

    doctor_parser = subparsers.add_parser("doctor", help="Check how srb would be launched")
    doctor_parser.add_argument("--json", action="store_true", help="Output as JSON")

    plan_parser = subparsers.add_parser("plan", help="Show which sessions opened files need")
    plan_parser.add_argument("roots", nargs="+", help="Workspace root folders")
    plan_parser.add_argument("--open", dest="files", action="append", default=[], help="File to open")
    plan_parser.add_argument("--json", action="store_true", help="Output as JSON")

    run_parser = subparsers.add_parser("run", help="Start sessions and keep them running")
    run_parser.add_argument("roots", nargs="+", help="Workspace root folders")
    run_parser.add_argument("--open", dest="files", action="append", default=[], help="File to open")

    args = parser.parse_args()

    level = logging.WARNING - 10 * min(args.verbose, 2)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    roots = getattr(args, "roots", None) or []
    workspace = args.workspace or (roots[0] if roots else None)
    try:
        config = load_config(Path(workspace) if workspace else None)
    except ConfigError as exc:
        print(f"error: {exc}", file=sys.stderr)
        sys.exit(2)

    if args.command == "command":
        _print_command(config, Path(workspace) if workspace else None, as_json=args.json)
    elif args.command == "doctor":
        status = _doctor_status(config)
        _print_doctor(status, as_json=args.json)
        sys.exit(0 if status.available else 1)
    elif args.command == "plan":
        _print_plan(roots, args.files, as_json=args.json)
    elif args.command == "run":
        try:
            sys.exit(anyio.run(_run, roots, args.files, config))
        except KeyboardInterrupt:
            sys.exit(130)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
