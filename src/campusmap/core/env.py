"""
`.env` loading and project-relative paths.

The identity-provider access token and the token signing secret usually live in
a repo-local `.env`. The JSON file store path in `defaults.yaml` is relative, and
uvicorn, the CLI and pytest all start from different working directories, so
relative paths are resolved against the project root rather than the cwd.

Overrides:
- `CAMPUSMAP_PROJECT_ROOT`: use this directory as the root.
- `CAMPUSMAP_ENV_FILE`: load this file instead of `<root>/.env` (its directory
  becomes the root).
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv

_ROOT_MARKERS = (".env", ".git", "pyproject.toml")


def _is_root(path: Path) -> bool:
    return any((path / marker).exists() for marker in _ROOT_MARKERS)


def _search_up(start: Path) -> Path | None:
    start = start.resolve()
    for candidate in (start, *start.parents):
        if _is_root(candidate):
            return candidate
    return None


@lru_cache
def get_project_root() -> Path:
    """Best-guess project root (cached): overrides, then cwd upwards, then this package upwards."""
    override = os.getenv("CAMPUSMAP_PROJECT_ROOT")
    if override:
        return Path(override).expanduser().resolve()

    env_file = os.getenv("CAMPUSMAP_ENV_FILE")
    if env_file:
        return Path(env_file).expanduser().resolve().parent

    return _search_up(Path.cwd()) or _search_up(Path(__file__).parent) or Path.cwd().resolve()


@lru_cache
def load_dotenv_if_present() -> Path | None:
    """Load the `.env` file once; variables already in the environment win."""
    explicit = os.getenv("CAMPUSMAP_ENV_FILE")
    env_path = Path(explicit).expanduser().resolve() if explicit else get_project_root() / ".env"
    if not env_path.is_file():
        return None
    load_dotenv(dotenv_path=env_path, override=False)
    return env_path


def resolve_project_path(path: str | Path) -> Path:
    """Absolute paths pass through; relative ones hang off the project root."""
    p = Path(path).expanduser()
    return p if p.is_absolute() else (get_project_root() / p).resolve()
