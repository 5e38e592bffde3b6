from __future__ import annotations
import os
import sys
from pathlib import Path
from typing import Iterable, List


def _sep() -> str:
    return ';' if os.name == 'nt' else ':'


def paths_from_env(var: str, defaults: Iterable[Path]) -> List[Path]:
    raw = os.environ.get(var)
    if not raw:
        return [Path(p) for p in defaults]
    sep = _sep()
    return [Path(p.strip()) for p in raw.split(sep) if p.strip()]


def _float_from_env(var: str, default: float) -> float:
    raw = os.environ.get(var)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{var} must be a number, got {raw!r}")


def _int_from_env(var: str, default: int) -> int:
    raw = os.environ.get(var)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{var} must be an integer, got {raw!r}")


def debug_enabled() -> bool:
    return bool(os.environ.get("XBRIDGE_DEBUG"))


def get_module_search_path() -> List[Path]:
    """Directories searched for relative `.py` module locators, before the CWD."""
    return paths_from_env('XBRIDGE_MODULE_PATH', [])


def get_http_timeout() -> float:
    return _float_from_env('XBRIDGE_HTTP_TIMEOUT', 5.0)


def get_http_retries() -> int:
    return _int_from_env('XBRIDGE_HTTP_RETRIES', 2)


def get_http_backoff() -> float:
    return _float_from_env('XBRIDGE_HTTP_BACKOFF', 0.2)


def _dbg(*parts):
    if debug_enabled():
        print("[DBG]", *parts, file=sys.stderr)
