"""Tests for building the srb command line."""

from srbmux.command import WATCH_PATTERNS, build_command, format_command
from srbmux.config import SorbetConfig

LSP_TAIL = ["tc", "--lsp", "--enable-all-experimental-lsp-features"]


class TestBuildCommand:
    def test_defaults(self):
        assert build_command(SorbetConfig()) == ["srb", *LSP_TAIL]

    def test_custom_command_path(self):
        config = SorbetConfig(command_path="/opt/sorbet/bin/srb")
        assert build_command(config) == ["/opt/sorbet/bin/srb", *LSP_TAIL]

    def test_bundler_prefix(self):
        config = SorbetConfig(use_bundler=True, bundler_path="bundle")
        assert build_command(config) == [
            "bundle",
            "exec",
            "srb",
            "tc",
            "--lsp",
            "--enable-all-experimental-lsp-features",
        ]

    def test_bundler_ignores_command_path(self):
        config = SorbetConfig(use_bundler=True, command_path="ignored", bundler_path="bin/bundle")
        assert build_command(config)[:3] == ["bin/bundle", "exec", "srb"]

    def test_disable_watchman_is_last(self):
        config = SorbetConfig(use_watchman=False)
        assert build_command(config)[-1] == "--disable-watchman"

    def test_bundler_and_no_watchman(self):
        config = SorbetConfig(use_bundler=True, use_watchman=False)
        assert build_command(config) == ["bundle", "exec", "srb", *LSP_TAIL, "--disable-watchman"]

    def test_deterministic(self):
        config = SorbetConfig(use_bundler=True, use_watchman=False)
        assert build_command(config) == build_command(config)

    def test_returns_fresh_list(self):
        config = SorbetConfig()
        first = build_command(config)
        first.append("--mutated")
        assert "--mutated" not in build_command(config)


def test_format_command_quotes_spaces():
    assert format_command(["/opt/my tools/srb", "tc"]) == "'/opt/my tools/srb' tc"


def test_watch_patterns():
    assert WATCH_PATTERNS == ("**/*.rb", "**/*.gemspec", "**/Gemfile")
