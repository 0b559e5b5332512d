"""CLI module for habitclock."""

from habitclock.cli.commands import app

__all__ = ["app"]
