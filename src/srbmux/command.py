"""Build the ``srb tc --lsp`` argument vector from configuration."""

from __future__ import annotations

import shlex
from collections.abc import Sequence

from .config import SorbetConfig

SORBET_EXECUTABLE = "srb"
LSP_ARGS: tuple[str, ...] = ("tc", "--lsp", "--enable-all-experimental-lsp-features")
DISABLE_WATCHMAN_FLAG = "--disable-watchman"

# Relative to the session root.
WATCH_PATTERNS: tuple[str, ...] = ("**/*.rb", "**/*.gemspec", "**/Gemfile")


def build_command(config: SorbetConfig) -> list[str]:
    """Return the argv for one language server, in srb's argument grammar order."""
    if config.use_bundler:
        command = [config.bundler_path, "exec", SORBET_EXECUTABLE]
    else:
        command = [config.command_path]

    command.extend(LSP_ARGS)

    if not config.use_watchman:
        command.append(DISABLE_WATCHMAN_FLAG)
    return command


def format_command(command: Sequence[str]) -> str:
    """Return shell-safe command rendering for user-facing output."""
    return " ".join(shlex.quote(part) for part in command)
