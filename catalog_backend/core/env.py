"""``.env`` loading for the catalog settings.

Values from the files only fill gaps: a variable already present in the
process environment always wins. ``.env.local`` may override ``.env``.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Dict

DEFAULT_ENV_FILE = Path(__file__).resolve().parents[2] / ".env"


def parse_env_file(path: Path) -> Dict[str, str]:
    """Read ``KEY=value`` lines; ``export`` prefixes and quotes are accepted."""

    values: Dict[str, str] = {}
    for raw_line in path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export ") :].lstrip()
        key, sep, value = line.partition("=")
        key = key.strip()
        if not sep or not key:
            continue
        values[key] = _parse_value(value.strip())
    return values


def load_env(path: Path | None = None) -> Dict[str, str]:
    """Apply env file values missing from ``os.environ`` and return what was applied."""

    base = path or DEFAULT_ENV_FILE
    candidates = [base] if path is not None else [base, base.with_name(".env.local")]

    merged: Dict[str, str] = {}
    for candidate in candidates:
        if candidate.is_file():
            merged.update(parse_env_file(candidate))

    applied = {key: value for key, value in merged.items() if key not in os.environ}
    os.environ.update(applied)
    return applied


def _parse_value(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
        return value[1:-1]
    # Unquoted values may carry a trailing comment.
    comment = value.find(" #")
    if comment != -1:
        value = value[:comment].rstrip()
    return value


__all__ = ["DEFAULT_ENV_FILE", "load_env", "parse_env_file"]
