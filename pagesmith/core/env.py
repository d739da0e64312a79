from __future__ import annotations

import os
from pathlib import Path
from typing import Iterator


def load_env(path: Path | None = None) -> None:
    """
    Load key=value pairs from the site's .env file(s) into os.environ.

    Loads in order:
    1. .env (base configuration)
    2. .env.local (developer overrides, only when no explicit path is given)

    Variables exported by the shell always win over both files.
    """
    shell_keys = set(os.environ.keys())

    env_path = path or _default_env_path()
    for key, value in _read_pairs(env_path):
        if key not in os.environ:
            os.environ[key] = value

    if path is not None:
        return
    for key, value in _read_pairs(env_path.parent / ".env.local"):
        if key not in shell_keys:
            os.environ[key] = value


def _read_pairs(env_path: Path) -> Iterator[tuple[str, str]]:
    if not env_path.exists():
        return
    for raw_line in env_path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        if line.startswith("export "):
            line = line[len("export "):]
        key, value = line.split("=", 1)
        key = key.strip()
        if key:
            yield key, _strip_quotes(value.strip())


def _default_env_path() -> Path:
    site_path = os.getenv("SITE_PATH")
    if site_path and site_path.strip():
        return Path(site_path).expanduser() / ".env"
    return Path.cwd() / ".env"


def _strip_quotes(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
        return value[1:-1]
    return value


__all__ = ["load_env"]
