"""Env-file loading and typed environment readers.

Every reader treats a missing or blank variable as "use the default", and
an unparsable one the same way, so a bad value never stops startup.
"""
from __future__ import annotations

import argparse
import json
import os
from pathlib import Path
from typing import Any, Callable, Dict, Optional, TypeVar

DEFAULT_ENV_FILE = ".env"

_TRUE = {"1", "true", "yes", "y", "on"}
_FALSE = {"0", "false", "no", "n", "off"}

T = TypeVar("T")


def _unquote(value: str) -> str:
    text = value.strip()
    if len(text) >= 2 and text[0] == text[-1] and text[0] in "\"'":
        return text[1:-1]
    return text


def _parse_line(raw: str) -> Optional[tuple[str, str]]:
    line = raw.strip()
    if line.lower().startswith("export "):
        line = line[len("export "):].lstrip()
    if not line or line.startswith("#") or "=" not in line:
        return None
    key, _, value = line.partition("=")
    key = key.strip()
    return (key, _unquote(value)) if key else None


def parse_env_file(path: str) -> Dict[str, str]:
    """KEY=VALUE pairs from *path*; an absent file yields nothing."""
    target = Path(path)
    if not target.is_file():
        return {}
    pairs = (_parse_line(raw) for raw in target.read_text(encoding="utf-8").splitlines())
    return dict(pair for pair in pairs if pair is not None)


def load_env_file(path: str, *, override: bool = False) -> Dict[str, str]:
    parsed = parse_env_file(path)
    for key, value in parsed.items():
        if override or key not in os.environ:
            os.environ[key] = value
    return parsed


def bootstrap_env_file(argv: Optional[list[str]]) -> str:
    """Load the env file before the real parser so its defaults see the values."""
    pre = argparse.ArgumentParser(add_help=False)
    pre.add_argument("--env-file", default=os.environ.get("ENV_FILE", DEFAULT_ENV_FILE))
    known, _ = pre.parse_known_args(argv)
    env_file = str(known.env_file).strip() or DEFAULT_ENV_FILE
    load_env_file(env_file)
    return env_file


def _env_text(name: str) -> Optional[str]:
    raw = os.environ.get(name)
    if raw is None:
        return None
    text = raw.strip()
    return text or None


def _env_cast(name: str, default: T, cast: Callable[[str], T]) -> T:
    text = _env_text(name)
    if text is None:
        return default
    try:
        return cast(text)
    except ValueError:
        return default


def env_str(name: str, default: str) -> str:
    text = _env_text(name)
    return default if text is None else text


def env_float(name: str, default: float) -> float:
    return _env_cast(name, float(default), float)


def env_int(name: str, default: int) -> int:
    return _env_cast(name, int(default), int)


def env_bool(name: str, default: bool) -> bool:
    text = (_env_text(name) or "").lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    return bool(default)


def env_json(name: str, default: Any) -> Any:
    # json.JSONDecodeError subclasses ValueError
    return _env_cast(name, default, json.loads)
