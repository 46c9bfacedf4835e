"""Background remover & flipper service."""

__version__ = "1.0.0"
