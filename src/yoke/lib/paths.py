"""Project and user directory layout.

The project root is the nearest ancestor of the working directory that
contains a ``.yoke/`` directory or a ``.git`` entry; if neither is found the
working directory itself is the root. User-scoped data lives under
``$XDG_CONFIG_HOME/yoke`` (``~/.config/yoke`` by default).

Layout:
    <project>/.yoke/config.toml
    <project>/.yoke/config.local.toml
    <project>/.yoke/permissions.local.toml
    <project>/.yoke/agents/*.toml
    <project>/.yoke/skills/<name>/SKILL.md
    <project>/.yoke/commands/<name>.md
    <project>/.yoke/transcripts/<session_id>.jsonl
    <project>/.yoke/history
    ~/.config/yoke/config.toml
    ~/.config/yoke/agents/*.toml
    ~/.config/yoke/skills/<name>/SKILL.md
    ~/.config/yoke/commands/<name>.md

Examples:
    Locate the project from a nested directory::

        >>> find_project_root(Path("/work/repo/src/pkg"))
        PosixPath('/work/repo')
        >>> project_dir(Path("/work/repo"))
        PosixPath('/work/repo/.yoke')
"""

import logging
import os
import uuid
from datetime import datetime
from pathlib import Path

logger = logging.getLogger(__name__)

PROJECT_DIR_NAME = ".yoke"
ROOT_MARKERS = (PROJECT_DIR_NAME, ".git")


def find_project_root(start: Path | None = None) -> Path:
    """Walk up from ``start`` (default: cwd) to the first directory holding a root marker."""
    current = (start or Path.cwd()).resolve()
    for parent in [current, *current.parents]:
        if any((parent / marker).exists() for marker in ROOT_MARKERS):
            return parent
    logger.debug("No project marker found above %s, using it as root", current)
    return current


def user_config_dir() -> Path:
    """Return the user-scoped config directory."""
    base = os.environ.get("XDG_CONFIG_HOME")
    root = Path(base) if base else Path.home() / ".config"
    return root / "yoke"


# -- Project-scoped paths -----------------------------------------------------


def project_dir(root: Path) -> Path:
    """Return ``<root>/.yoke``."""
    return root / PROJECT_DIR_NAME


def transcripts_dir(root: Path) -> Path:
    """Return ``<root>/.yoke/transcripts``."""
    return project_dir(root) / "transcripts"


def history_file(root: Path) -> Path:
    """Return the REPL input history file."""
    return project_dir(root) / "history"


def config_files(root: Path) -> list[Path]:
    """Config files in merge order (later wins). Missing files are skipped."""
    candidates = [
        user_config_dir() / "config.toml",
        project_dir(root) / "config.toml",
        project_dir(root) / "config.local.toml",
        permissions_file(root),
    ]
    return [p for p in candidates if p.is_file()]


def permissions_file(root: Path) -> Path:
    """Permission rules added from the REPL; merged after every other config file."""
    return project_dir(root) / "permissions.local.toml"


def agent_dirs(root: Path) -> list[Path]:
    """Agent discovery roots, highest precedence first."""
    return [project_dir(root) / "agents", user_config_dir() / "agents"]


def skill_dirs(root: Path) -> list[Path]:
    """Skill discovery roots, highest precedence first."""
    return [project_dir(root) / "skills", user_config_dir() / "skills"]


def command_dirs(root: Path) -> list[Path]:
    """Custom slash command roots, highest precedence first."""
    return [project_dir(root) / "commands", user_config_dir() / "commands"]


# -- Session ids --------------------------------------------------------------

TIMESTAMP_FMT = "%Y%m%d_%H%M%S"


def new_session_id() -> str:
    """Timestamp plus a random suffix, so ids sort by start time and never collide."""
    return f"{datetime.now().strftime(TIMESTAMP_FMT)}_{uuid.uuid4().hex[:6]}"
