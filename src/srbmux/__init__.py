"""srbmux - run one Sorbet language server per outermost workspace root."""

__version__ = "0.3.1"
