"""Layered env files for the agentlink command line.

The console is usually started from inside a project checkout whose own
``.env`` belongs to that project, so only ``AGENTLINK_*`` keys are taken from
env files. Everything else in them is ignored.

Sources, highest precedence first:
    1. Variables already in the environment, including CLI flag overrides
    2. The file given with ``--env-file`` or ``AGENTLINK_ENV_FILE``
    3. ``.env`` in the working directory
    4. ``$XDG_CONFIG_HOME/agentlink/config.env``
"""

from __future__ import annotations

import os
import re
from pathlib import Path

APP_NAME = "agentlink"
ENV_PREFIX = "AGENTLINK_"
ENV_FILE_VAR = "AGENTLINK_ENV_FILE"

_ASSIGNMENT = re.compile(r"^(?:export\s+)?(?P<key>[A-Za-z_][A-Za-z0-9_]*)\s*=\s*(?P<value>.*)$")
_INLINE_COMMENT = re.compile(r"(?:^|\s)#.*$")


def _xdg_dir(env_var: str, *fallback: str) -> Path:
    base = os.environ.get(env_var, "").strip()
    root = Path(base) if base else Path.home().joinpath(*fallback)
    return root / APP_NAME


def config_dir() -> Path:
    """Directory holding the user-wide ``config.env``."""
    return _xdg_dir("XDG_CONFIG_HOME", ".config")


def data_dir_default() -> Path:
    """Default home of the conversation store database."""
    return _xdg_dir("XDG_DATA_HOME", ".local", "share")


def _value(raw: str) -> str:
    if len(raw) >= 2 and raw[0] == raw[-1] and raw[0] in "\"'":
        return raw[1:-1]
    return _INLINE_COMMENT.sub("", raw).rstrip()


def parse_env_file(path: str | Path) -> dict[str, str]:
    """Read ``KEY=value`` assignments from an env file.

    ``export`` prefixes, matching quotes and ``#`` comments are understood.
    Lines that are not assignments are skipped. A missing or unreadable file
    yields an empty dict.
    """
    try:
        lines = Path(path).read_text(encoding="utf-8").splitlines()
    except (OSError, UnicodeDecodeError):
        return {}

    pairs: dict[str, str] = {}
    for line in lines:
        match = _ASSIGNMENT.match(line.strip())
        if match is not None:
            pairs[match["key"]] = _value(match["value"].strip())
    return pairs


def env_files(explicit: str | Path | None = None) -> list[Path]:
    """Env files to consult, lowest precedence first."""
    files = [config_dir() / "config.env", Path.cwd() / ".env"]
    explicit = explicit or os.environ.get(ENV_FILE_VAR, "").strip()
    if explicit:
        files.append(Path(explicit).expanduser())
    return files


def load_config(env_file: str | Path | None = None) -> list[Path]:
    """Copy ``AGENTLINK_*`` values from env files into ``os.environ``.

    Variables that are already set are never overwritten.

    Returns:
        The files that supplied at least one value, lowest precedence first.
    """
    merged: dict[str, str] = {}
    used: list[Path] = []
    for path in env_files(env_file):
        values = {k: v for k, v in parse_env_file(path).items() if k.startswith(ENV_PREFIX)}
        if values:
            merged.update(values)
            used.append(path)

    for key, value in merged.items():
        os.environ.setdefault(key, value)
    return used
