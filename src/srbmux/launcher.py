"""Spawn language server processes through a login shell or directly.

On macOS and Linux the toolchain is frequently installed by a version manager
(rbenv, rvm, chruby, asdf) that only puts ``srb`` and ``bundle`` on ``PATH``
from the user's shell profile. For ``bash`` and ``zsh`` users the command is
therefore run as ``$SHELL -l -c 'cd <root> && <command>'``. Every other
platform or shell spawns the executable directly.
"""

from __future__ import annotations

import contextlib
import logging
import os
import shlex
import shutil
import signal
import subprocess
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Any

import anyio
from anyio.abc import ByteReceiveStream, ByteSendStream, Process

from .command import format_command
from .errors import EscapingFailure, LaunchFailure

logger = logging.getLogger(__name__)

DEFAULT_SHELL = "/bin/bash"
LOGIN_SHELLS = frozenset({"bash", "zsh"})
LOGIN_SHELL_FLAGS: tuple[str, ...] = ("-l", "-c")


@dataclass(frozen=True)
class LoginShell:
    """Run the command string inside the user's login shell."""

    shell_path: str


@dataclass(frozen=True)
class DirectExec:
    """Spawn the executable with no shell in between."""


LaunchStrategy = LoginShell | DirectExec


@dataclass(frozen=True)
class LaunchOptions:
    """Process options for one session."""

    cwd: str | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    debug_port: int | None = None

    def process_env(self) -> dict[str, str]:
        merged = dict(os.environ)
        merged.update(self.env)
        if self.debug_port is not None:
            merged["SRBMUX_DEBUG_PORT"] = str(self.debug_port)
        return merged


@dataclass(frozen=True)
class ExitStatus:
    """How a language server process ended (or failed to start)."""

    returncode: int | None = None
    signal: str | None = None
    error: BaseException | None = None

    @classmethod
    def from_returncode(cls, returncode: int | None) -> ExitStatus:
        if returncode is not None and returncode < 0:
            try:
                name = signal.Signals(-returncode).name
            except ValueError:
                name = str(-returncode)
            return cls(returncode=returncode, signal=name)
        return cls(returncode=returncode)

    @property
    def failed_to_launch(self) -> bool:
        return self.error is not None

    def describe(self) -> str:
        if self.error is not None:
            return f"failed to launch: {self.error}"
        return f"code {self.returncode} signal {self.signal}"


def is_posix_platform(platform: str) -> bool:
    return platform == "darwin" or platform.startswith("linux")


def select_strategy(platform: str, shell: str | None) -> LaunchStrategy:
    """Pick the launch strategy for a platform and the user's ``$SHELL``."""
    if not is_posix_platform(platform):
        return DirectExec()

    shell_path = shell or DEFAULT_SHELL
    if PurePosixPath(shell_path).name in LOGIN_SHELLS:
        return LoginShell(shell_path)
    return DirectExec()


def _quote(token: Any) -> str:
    if not isinstance(token, str):
        raise EscapingFailure(f"Cannot quote non-string token {token!r}")
    if "\x00" in token:
        raise EscapingFailure(f"Cannot quote token containing a NUL byte: {token!r}")
    return shlex.quote(token)


def login_shell_command(command: Sequence[str], cwd: str | None) -> str:
    """Build ``cd <cwd> && <command>`` with every token shell-quoted."""
    if not command:
        raise EscapingFailure("Cannot build a shell command from an empty argv")

    command_text = " ".join(_quote(token) for token in command)
    if cwd is None:
        return command_text
    if not cwd:
        raise EscapingFailure("Cannot change into an empty working directory")
    return f"cd {_quote(cwd)} && {command_text}"


def resolve_executable(name: str, env: Mapping[str, str] | None = None) -> str:
    """Resolve an executable on PATH (PATHEXT-aware on Windows), else return it unchanged."""
    search_path = env.get("PATH") if env is not None else None
    return shutil.which(name, path=search_path) or name


def strategy_argv(
    strategy: LaunchStrategy,
    command: Sequence[str],
    options: LaunchOptions,
    env: Mapping[str, str] | None = None,
) -> list[str]:
    """Return the argv actually handed to the OS for a strategy."""
    if isinstance(strategy, LoginShell):
        return [strategy.shell_path, *LOGIN_SHELL_FLAGS, login_shell_command(command, options.cwd)]

    if not command:
        raise LaunchFailure("Cannot start a process from an empty command")
    return [resolve_executable(command[0], env), *command[1:]]


class ProcessHandle:
    """A launched (or failed) language server process.

    A failed handle has no streams; ``wait()`` returns immediately with the
    launch error in ``ExitStatus.error``.
    """

    def __init__(
        self,
        command: Sequence[str],
        strategy: LaunchStrategy,
        process: Process | None = None,
        error: BaseException | None = None,
    ) -> None:
        self.command = tuple(command)
        self.strategy = strategy
        self._process = process
        self._status: ExitStatus | None = None if process is not None else ExitStatus(error=error)
        self._wait_lock = anyio.Lock()

    @property
    def failed(self) -> bool:
        return self._process is None

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def stdin(self) -> ByteSendStream | None:
        return self._process.stdin if self._process is not None else None

    @property
    def stdout(self) -> ByteReceiveStream | None:
        return self._process.stdout if self._process is not None else None

    @property
    def stderr(self) -> ByteReceiveStream | None:
        return self._process.stderr if self._process is not None else None

    @property
    def returncode(self) -> int | None:
        if self._process is None:
            return None
        return self._process.returncode

    @property
    def exit_status(self) -> ExitStatus | None:
        """The exit status once known, without waiting."""
        return self._status

    async def wait(self) -> ExitStatus:
        """Wait for exit; safe to await from several tasks."""
        if self._status is not None:
            return self._status

        async with self._wait_lock:
            if self._status is None:
                assert self._process is not None
                returncode = await self._process.wait()
                self._status = ExitStatus.from_returncode(returncode)
        return self._status

    def terminate(self) -> None:
        if self._process is not None and self._process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                self._process.terminate()

    def kill(self) -> None:
        if self._process is not None and self._process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                self._process.kill()

    async def aclose_stdin(self) -> None:
        stdin = self.stdin
        if stdin is not None:
            with contextlib.suppress(anyio.BrokenResourceError, anyio.ClosedResourceError, OSError):
                await stdin.aclose()


async def launch(
    command: Sequence[str],
    options: LaunchOptions,
    *,
    platform: str | None = None,
    shell: str | None = None,
) -> ProcessHandle:
    """Spawn ``command`` for one session; never raises.

    Launch failures, including commands that cannot be escaped safely, are
    reported through the returned handle's exit status.
    """
    platform = platform if platform is not None else sys.platform
    if shell is None:
        shell = os.environ.get("SHELL")
    strategy = select_strategy(platform, shell)
    env = options.process_env()

    try:
        argv = strategy_argv(strategy, command, options, env)
    except LaunchFailure as exc:
        # Fail closed: never fall back to spawning an unescaped command.
        logger.error("Refusing to launch %r: %s", list(command), exc)
        return ProcessHandle(command, strategy, error=exc)

    logger.info("Launching %s in %s via %s", format_command(command), options.cwd, strategy)

    try:
        process = await anyio.open_process(
            argv,
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=options.cwd,
            env=env,
        )
    except OSError as exc:
        logger.warning("Failed to start language server %s: %s", argv, exc)
        return ProcessHandle(command, strategy, error=LaunchFailure(str(exc)))

    return ProcessHandle(command, strategy, process=process)
