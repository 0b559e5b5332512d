"""Entry point for ``python -m habitclock``."""

from habitclock.cli.commands import app

if __name__ == "__main__":
    app()
