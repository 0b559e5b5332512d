"""Utility functions for habitclock."""

import os
import uuid
from datetime import datetime
from pathlib import Path


def ensure_dir(path: Path) -> Path:
    """Ensure a directory exists, creating it if necessary."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_path() -> Path:
    """Get the habitclock data directory (~/.habitclock or HABITCLOCK_DATA_DIR)."""
    override = (os.environ.get("HABITCLOCK_DATA_DIR") or "").strip() or None
    return ensure_dir(Path(override) if override else Path.home() / ".habitclock")


def get_workspace_path(workspace: str | None = None) -> Path:
    """
    Get the workspace path.

    Args:
        workspace: Optional workspace path. Defaults to ~/.habitclock/workspace.

    Returns:
        Expanded and ensured workspace path.
    """
    if workspace:
        path = Path(workspace).expanduser()
    else:
        path = get_data_path() / "workspace"
    return ensure_dir(path)


def generate_id(prefix: str) -> str:
    """Generate unique ID: {prefix}_xxxxxxxx."""
    return f"{prefix}_{str(uuid.uuid4())[:8]}"


def now_iso() -> str:
    """Current local timestamp in ISO 8601 format."""
    return datetime.now().isoformat()

