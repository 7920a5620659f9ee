"""Tests for launch strategy selection, escaping and process spawning."""

from __future__ import annotations

import json
import os
import shlex
import shutil
import sys
from unittest.mock import patch

import pytest

from srbmux.errors import EscapingFailure, LaunchFailure
from srbmux.launcher import (
    DirectExec,
    ExitStatus,
    LaunchOptions,
    LoginShell,
    launch,
    login_shell_command,
    select_strategy,
    strategy_argv,
)

BASH = shutil.which("bash")
needs_bash = pytest.mark.skipif(
    BASH is None or sys.platform == "win32", reason="bash login shell not available"
)


async def _read_all(stream) -> bytes:
    return b"".join([chunk async for chunk in stream])


class TestSelectStrategy:
    @pytest.mark.parametrize("platform", ["linux", "darwin"])
    @pytest.mark.parametrize("shell", ["/bin/bash", "/usr/local/bin/zsh", "/bin/zsh"])
    def test_posix_bash_and_zsh_use_login_shell(self, platform, shell):
        assert select_strategy(platform, shell) == LoginShell(shell)

    @pytest.mark.parametrize("shell", [None, ""])
    def test_unset_shell_defaults_to_bash(self, shell):
        assert select_strategy("linux", shell) == LoginShell("/bin/bash")

    @pytest.mark.parametrize("shell", ["/usr/bin/fish", "/bin/sh", "/bin/tcsh"])
    def test_other_shells_exec_directly(self, shell):
        assert select_strategy("darwin", shell) == DirectExec()

    @pytest.mark.parametrize("platform", ["win32", "cygwin", "freebsd14", "aix"])
    def test_other_platforms_exec_directly(self, platform):
        assert select_strategy(platform, "/bin/bash") == DirectExec()


class TestLoginShellCommand:
    def test_plain_tokens(self):
        assert login_shell_command(["srb", "tc"], "/repo") == "cd /repo && srb tc"

    def test_quotes_cwd_and_tokens(self):
        text = login_shell_command(["bundle exec", "$(rm -rf ~)"], "/my repo/$HOME")
        assert text == "cd '/my repo/$HOME' && 'bundle exec' '$(rm -rf ~)'"

    def test_quoting_round_trips(self):
        tokens = ["srb", "it's", "a b", "`id`", ";", "&&", "*"]
        text = login_shell_command(tokens, "/x y")
        assert shlex.split(text) == ["cd", "/x y", "&&", *tokens]

    def test_without_cwd(self):
        assert login_shell_command(["srb"], None) == "srb"

    @pytest.mark.parametrize(
        ("command", "cwd"),
        [
            ([], "/repo"),
            (["srb", "bad\x00arg"], "/repo"),
            (["srb"], "/re\x00po"),
            (["srb", 42], "/repo"),
            (["srb"], ""),
        ],
    )
    def test_unquotable_input_raises(self, command, cwd):
        with pytest.raises(EscapingFailure):
            login_shell_command(command, cwd)


class TestStrategyArgv:
    def test_login_shell_argv(self):
        argv = strategy_argv(LoginShell("/bin/zsh"), ["srb", "tc"], LaunchOptions(cwd="/r"))
        assert argv == ["/bin/zsh", "-l", "-c", "cd /r && srb tc"]

    def test_direct_exec_resolves_executable(self):
        with patch("srbmux.launcher.shutil.which", return_value="C:\\tools\\srb.cmd") as which:
            argv = strategy_argv(DirectExec(), ["srb", "tc"], LaunchOptions(), {"PATH": "C:\\tools"})
        which.assert_called_once_with("srb", path="C:\\tools")
        assert argv == ["C:\\tools\\srb.cmd", "tc"]

    def test_direct_exec_unresolved_keeps_name(self):
        with patch("srbmux.launcher.shutil.which", return_value=None):
            assert strategy_argv(DirectExec(), ["srb"], LaunchOptions()) == ["srb"]

    def test_direct_exec_empty_command(self):
        with pytest.raises(LaunchFailure):
            strategy_argv(DirectExec(), [], LaunchOptions())


class TestExitStatus:
    def test_signal_from_negative_returncode(self):
        status = ExitStatus.from_returncode(-15)
        assert status.signal == "SIGTERM"
        assert "SIGTERM" in status.describe()

    def test_plain_returncode(self):
        status = ExitStatus.from_returncode(3)
        assert (status.returncode, status.signal) == (3, None)
        assert not status.failed_to_launch

    def test_launch_error(self):
        status = ExitStatus(error=LaunchFailure("nope"))
        assert status.failed_to_launch
        assert status.describe() == "failed to launch: nope"


def test_launch_options_env(monkeypatch):
    monkeypatch.setenv("SRBMUX_TEST_INHERITED", "1")
    env = LaunchOptions(env={"EXTRA": "x"}, debug_port=6012).process_env()
    assert env["SRBMUX_TEST_INHERITED"] == "1"
    assert env["EXTRA"] == "x"
    assert env["SRBMUX_DEBUG_PORT"] == "6012"


class TestLaunch:
    @pytest.mark.asyncio
    async def test_direct_exec_runs_process(self, tmp_path):
        script = "import os, sys; sys.stderr.write(os.getcwd() + '\\n'); sys.exit(3)"
        handle = await launch(
            [sys.executable, "-c", script],
            LaunchOptions(cwd=str(tmp_path)),
            platform="win32",
        )
        assert not handle.failed
        assert handle.pid is not None
        assert isinstance(handle.strategy, DirectExec)
        await handle.aclose_stdin()
        stderr = await _read_all(handle.stderr)
        status = await handle.wait()
        assert status.returncode == 3
        assert os.path.realpath(stderr.decode().strip()) == os.path.realpath(tmp_path)

    @pytest.mark.asyncio
    async def test_missing_executable_fails_asynchronously(self):
        handle = await launch(["srbmux-no-such-binary-xyz"], LaunchOptions(), platform="win32")
        assert handle.failed
        assert handle.stderr is None
        status = await handle.wait()
        assert status.failed_to_launch
        assert isinstance(status.error, LaunchFailure)

    @pytest.mark.asyncio
    async def test_missing_cwd_fails_asynchronously(self, tmp_path):
        handle = await launch(
            [sys.executable, "-c", "pass"],
            LaunchOptions(cwd=str(tmp_path / "gone")),
            platform="win32",
        )
        assert handle.failed
        assert (await handle.wait()).failed_to_launch

    @pytest.mark.asyncio
    async def test_unescapable_command_fails_closed(self):
        with patch("srbmux.launcher.anyio.open_process") as open_process:
            handle = await launch(
                ["srb", "tc\x00"],
                LaunchOptions(cwd="/repo"),
                platform="linux",
                shell="/bin/bash",
            )
        open_process.assert_not_called()
        assert handle.failed
        status = await handle.wait()
        assert isinstance(status.error, EscapingFailure)

    @pytest.mark.asyncio
    async def test_terminate_reports_signal(self):
        if sys.platform == "win32":
            pytest.skip("POSIX signals only")
        handle = await launch(
            [sys.executable, "-c", "import time; time.sleep(30)"],
            LaunchOptions(),
            platform="win32",
        )
        handle.terminate()
        status = await handle.wait()
        assert status.signal == "SIGTERM"
        # Signalling an exited process is a no-op.
        handle.terminate()
        handle.kill()

    @needs_bash
    @pytest.mark.asyncio
    async def test_login_shell_round_trips_cwd_and_args(self, tmp_path):
        workdir = tmp_path / "my repo $HOME 'quoted'"
        workdir.mkdir()
        args = ["a b", "$PATH", "it's", "`id`", "x;y"]
        script = "import json, os, sys; print(json.dumps([os.getcwd(), sys.argv[1:]]))"

        handle = await launch(
            [sys.executable, "-c", script, *args],
            LaunchOptions(cwd=str(workdir)),
            platform="linux",
            shell=BASH,
        )
        assert handle.strategy == LoginShell(BASH)
        await handle.aclose_stdin()
        stdout = await _read_all(handle.stdout)
        status = await handle.wait()

        assert status.returncode == 0
        # Profile scripts may print; the payload is the last line.
        cwd, argv = json.loads(stdout.decode().strip().splitlines()[-1])
        assert os.path.realpath(cwd) == os.path.realpath(workdir)
        assert argv == args
