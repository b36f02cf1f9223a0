"""
tool_env_config.py

Configuration and global defaults for the tool environment pool.
See tool_env_pool.py for the pool itself and the motivation of the design.
The pool hands analysis jobs a ToolEnvironment backed by a reusable
    package-cache directory. How long a cache directory is reused (invocation
    count, size ceiling), where the SDKs live and where the per-generation
    temp directories go are all configured here.
Note that settings are resolved when a ToolEnvPool is constructed; changing
    them afterwards only affects pools created later.

Exposes to the user:
- `set_tool_env_defaults` to programmatically override any setting
- `reset_tool_env_defaults` to drop programmatic overrides

Provides to the pool:
- `resolve_tool_env_config` to build the effective ToolEnvConfig, resolved as
    1) explicit keyword argument
    2) programmatic default set via `set_tool_env_defaults`
    3) environment variable (TOOL_ENV_*)
    4) fallback
"""

import os
import tempfile
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

# Reuse budget of one cache directory generation.
MAX_COUNT = 50
MAX_SIZE_BYTES = 500 * 1024 * 1024  # 500 MB

DEFAULT_TOOL_DIR = Path("/tool")

# ---- Global state
_TOOL_ENV_DEFAULTS: Dict[str, Any] = {}


@dataclass(frozen=True)
class ToolEnvConfig:
    """Effective settings of a ToolEnvPool."""
    tool_dir: Path
    stable_dart_sdk_dir: Path
    stable_flutter_sdk_dir: Path
    preview_dart_sdk_dir: Path
    preview_flutter_sdk_dir: Path
    temp_root: Path
    max_count: int = MAX_COUNT
    max_size_bytes: int = MAX_SIZE_BYTES
    scan_roots: Tuple[Path, ...] = ()
    event_log_path: Optional[Path] = None
    strip_flutter_git: bool = True
    report_sizes: bool = True


_FIELD_NAMES = frozenset(f.name for f in fields(ToolEnvConfig))


def _positive_int(name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValueError(f"{name} must be a positive integer, got {value!r}")
    return value


def _as_path(name: str, value: Any) -> Path:
    if not isinstance(value, (str, Path)):
        raise TypeError(f"{name} must be a str or Path, got {type(value)}")
    return Path(value)


def _as_paths(name: str, value: Any) -> Tuple[Path, ...]:
    if isinstance(value, (str, Path)):
        raise TypeError(f"{name} must be an iterable of paths, not a single path")
    return tuple(_as_path(name, v) for v in value)


def _as_optional_path(name: str, value: Any) -> Optional[Path]:
    return None if value is None else _as_path(name, value)


def _as_bool(name: str, value: Any) -> bool:
    if not isinstance(value, bool):
        raise TypeError(f"{name} must be a bool, got {type(value)}")
    return value


_VALIDATORS: Dict[str, Callable[[str, Any], Any]] = {
    "tool_dir": _as_path,
    "stable_dart_sdk_dir": _as_path,
    "stable_flutter_sdk_dir": _as_path,
    "preview_dart_sdk_dir": _as_path,
    "preview_flutter_sdk_dir": _as_path,
    "temp_root": _as_path,
    "max_count": _positive_int,
    "max_size_bytes": _positive_int,
    "scan_roots": _as_paths,
    "event_log_path": _as_optional_path,
    "strip_flutter_git": _as_bool,
    "report_sizes": _as_bool,
}


def _validate(overrides: Dict[str, Any]) -> Dict[str, Any]:
    unknown = set(overrides) - _FIELD_NAMES
    if unknown:
        raise TypeError(f"Unknown tool env settings: {sorted(unknown)}")
    return {k: _VALIDATORS[k](k, v) for k, v in overrides.items()}


def set_tool_env_defaults(**overrides: Any) -> None:
    """
    Programmatically set global defaults (overrides env).
    Accepts any ToolEnvConfig field name; passing None for a field removes
        its programmatic default (except `event_log_path`, where None is
        stored as "disabled").
    Intended to be called by the user.
    """
    removed = [
        k for k, v in overrides.items() if v is None and k != "event_log_path"
    ]
    for k in removed:
        overrides.pop(k)
        if k not in _FIELD_NAMES:
            raise TypeError(f"Unknown tool env setting: {k}")
        _TOOL_ENV_DEFAULTS.pop(k, None)
    _TOOL_ENV_DEFAULTS.update(_validate(overrides))


def reset_tool_env_defaults() -> None:
    """Drop every programmatic default set via `set_tool_env_defaults`."""
    _TOOL_ENV_DEFAULTS.clear()


# ---- Environment variable parsing
# Invalid values are ignored so a typo in the environment falls back to
# the built-in default instead of breaking startup.


def _env_path(var: str) -> Optional[Path]:
    val = os.environ.get(var)
    return Path(val) if val else None


def _env_int(var: str) -> Optional[int]:
    val = os.environ.get(var)
    if val is None:
        return None
    try:
        n = int(val)
    except ValueError:
        return None
    return n if n > 0 else None


def _env_bool(var: str) -> Optional[bool]:
    val = os.environ.get(var)
    if val is None:
        return None
    val = val.strip().lower()
    if val in ("1", "true", "yes", "on"):
        return True
    if val in ("0", "false", "no", "off"):
        return False
    return None


def _env_paths(var: str) -> Optional[Tuple[Path, ...]]:
    val = os.environ.get(var)
    if val is None:
        return None
    return tuple(Path(p) for p in val.split(os.pathsep) if p)


def _pick(name: str, explicit: Dict[str, Any], env_value: Any) -> Any:
    if name in explicit:
        return explicit[name]
    if name in _TOOL_ENV_DEFAULTS:
        return _TOOL_ENV_DEFAULTS[name]
    return env_value


def resolve_tool_env_config(**overrides: Any) -> ToolEnvConfig:
    """
    Decide the effective configuration of a tool environment pool.
    SDK directories default to `<tool_dir>/<channel>/{dart-sdk,flutter}`,
        so setting only `tool_dir` relocates all four.
    Intended to be used internally by ToolEnvPool at construction.
    """
    explicit = _validate({
        k: v for k, v in overrides.items()
        if v is not None or k == "event_log_path"
    })

    tool_dir = _pick("tool_dir", explicit, _env_path("TOOL_ENV_TOOL_DIR"))
    tool_dir = tool_dir or DEFAULT_TOOL_DIR

    def sdk(name: str, var: str, channel: str, leaf: str) -> Path:
        return _pick(name, explicit, _env_path(var)) or tool_dir / channel / leaf

    max_count = _pick("max_count", explicit, _env_int("TOOL_ENV_MAX_COUNT"))
    max_size = _pick(
        "max_size_bytes", explicit, _env_int("TOOL_ENV_MAX_SIZE_BYTES")
    )
    scan_roots = _pick("scan_roots", explicit, _env_paths("TOOL_ENV_SCAN_ROOTS"))
    strip_git = _pick(
        "strip_flutter_git", explicit, _env_bool("TOOL_ENV_STRIP_FLUTTER_GIT")
    )
    report = _pick("report_sizes", explicit, _env_bool("TOOL_ENV_REPORT_SIZES"))

    return ToolEnvConfig(
        tool_dir=tool_dir,
        stable_dart_sdk_dir=sdk(
            "stable_dart_sdk_dir", "TOOL_ENV_STABLE_DART_SDK",
            "stable", "dart-sdk"),
        stable_flutter_sdk_dir=sdk(
            "stable_flutter_sdk_dir", "TOOL_ENV_STABLE_FLUTTER_SDK",
            "stable", "flutter"),
        preview_dart_sdk_dir=sdk(
            "preview_dart_sdk_dir", "TOOL_ENV_PREVIEW_DART_SDK",
            "preview", "dart-sdk"),
        preview_flutter_sdk_dir=sdk(
            "preview_flutter_sdk_dir", "TOOL_ENV_PREVIEW_FLUTTER_SDK",
            "preview", "flutter"),
        temp_root=(
            _pick("temp_root", explicit, _env_path("TOOL_ENV_TEMP_ROOT"))
            or Path(tempfile.gettempdir())
        ),
        max_count=max_count or MAX_COUNT,
        max_size_bytes=max_size or MAX_SIZE_BYTES,
        scan_roots=scan_roots if scan_roots is not None else (tool_dir,),
        event_log_path=_pick(
            "event_log_path", explicit, _env_path("TOOL_ENV_EVENT_LOG")
        ),
        strip_flutter_git=True if strip_git is None else strip_git,
        report_sizes=True if report is None else report,
    )
