"""Console presentation of workflow runs."""

from .console import ConsoleManager

__all__ = ["ConsoleManager"]
