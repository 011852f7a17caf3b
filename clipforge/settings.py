"""Runtime configuration loaded from YAML for clipforge."""
from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any, List, Optional, Union, get_args, get_origin, get_type_hints

import yaml

from .config import DEFAULT_DIAGNOSTIC_RESOLUTIONS, PACKAGE_ROOT, PROJECT_ROOT
from .models import ExecutionMode
from .timeouts import TimeoutPolicy

CONFIG_ENV_VAR = "CLIPFORGE_CONFIG"
DEFAULT_CONFIG_FILENAME = "config.yaml"


def _resolve_path(value: str | Path | None) -> Optional[Path]:
    if value is None:
        return None
    path = Path(value).expanduser()
    if not path.is_absolute():
        path = (PROJECT_ROOT / path).resolve()
    return path


def _unwrap_optional(type_hint: Any) -> Any:
    origin = get_origin(type_hint)
    if origin is Union:
        args = [arg for arg in get_args(type_hint) if arg is not type(None)]
        return args[0] if args else Any
    return type_hint


@dataclass(slots=True)
class EngineSettings:
    """Which ffmpeg binary runs jobs and in which execution mode."""

    ffmpeg_bin: str = "ffmpeg"
    mode: str = ExecutionMode.MULTI_THREADED.value


@dataclass(slots=True)
class ProbeSettings:
    ffprobe_bin: str = "ffprobe"
    timeout_s: float = 30.0


@dataclass(slots=True)
class TimeoutSettings:
    """Constants of the adaptive budget estimator."""

    unit_fraction: float = 0.005
    floor_ms: int = 30_000
    ceiling_ms: int = 600_000
    multi_margin: float = 4.0
    single_margin: float = 8.0
    multi_progress_resets: bool = True
    single_progress_resets: bool = True

    def policy(self) -> TimeoutPolicy:
        return TimeoutPolicy(
            unit_fraction=self.unit_fraction,
            floor_ms=self.floor_ms,
            ceiling_ms=self.ceiling_ms,
            multi_margin=self.multi_margin,
            single_margin=self.single_margin,
            multi_progress_resets=self.multi_progress_resets,
            single_progress_resets=self.single_progress_resets,
        )


@dataclass(slots=True)
class DiagnosticSettings:
    """Fixed clip length and flat per-trial ceiling of diagnostic batches."""

    clip_seconds: int = 30
    trial_timeout_s: float = 45.0
    resolutions: List[str] = field(default_factory=lambda: list(DEFAULT_DIAGNOSTIC_RESOLUTIONS))


@dataclass(slots=True)
class OutputDefaults:
    frame_rate: int = 24
    bitrate_kbps: int = 2000
    mono_audio: bool = False
    allow_upscale: bool = False


@dataclass(slots=True)
class PathsSettings:
    """Filesystem locations used by the CLI."""

    log_dir: Optional[Path] = None
    output_dir: Optional[Path] = None


@dataclass(slots=True)
class AppSettings:
    """Top-level settings exposed to the rest of the application."""

    engine: EngineSettings = field(default_factory=EngineSettings)
    probe: ProbeSettings = field(default_factory=ProbeSettings)
    timeouts: TimeoutSettings = field(default_factory=TimeoutSettings)
    diagnostics: DiagnosticSettings = field(default_factory=DiagnosticSettings)
    output: OutputDefaults = field(default_factory=OutputDefaults)
    paths: PathsSettings = field(default_factory=PathsSettings)


def _coerce_value(value: Any, target_type: Any) -> Any:
    """Convert ``value`` into ``target_type`` when possible."""

    base_type = _unwrap_optional(target_type)
    if base_type is Path:
        return _resolve_path(value)
    if base_type is str:
        return None if value is None else str(value)
    if base_type is int:
        return None if value is None else int(value)
    if base_type is float:
        return None if value is None else float(value)
    if base_type is bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in {"true", "1", "yes", "on"}:
                return True
            if lowered in {"false", "0", "no", "off"}:
                return False
        return bool(value)
    if get_origin(base_type) in (list, List):
        (item_type,) = get_args(base_type) or (Any,)
        items = value if isinstance(value, (list, tuple)) else [value]
        return [_coerce_value(item, item_type) for item in items]
    return value


def _merge_dataclass(instance: Any, data: dict[str, Any]) -> Any:
    # Field types are strings under postponed evaluation of annotations.
    hints = get_type_hints(type(instance))
    for field_info in fields(instance):
        key = field_info.name
        if key not in data:
            continue
        value = data[key]
        current = getattr(instance, key)
        if is_dataclass(current) and isinstance(value, dict):
            _merge_dataclass(current, value)
        else:
            coerced = _coerce_value(value, hints.get(key, field_info.type))
            setattr(instance, key, coerced)
    return instance


def _validate(config: AppSettings) -> None:
    try:
        ExecutionMode(config.engine.mode)
    except ValueError as exc:
        raise ValueError(f"engine.mode must be 'multi' or 'single', got {config.engine.mode!r}") from exc
    if config.timeouts.floor_ms > config.timeouts.ceiling_ms:
        raise ValueError("timeouts.floor_ms must not exceed timeouts.ceiling_ms")


def load_settings(path: Optional[Path] = None) -> AppSettings:
    """Load configuration from ``path`` falling back to defaults."""

    config_path = path
    if config_path is None:
        env_value = os.environ.get(CONFIG_ENV_VAR)
        if env_value:
            config_path = Path(env_value).expanduser()
        else:
            config_path = PACKAGE_ROOT / DEFAULT_CONFIG_FILENAME
    config = AppSettings()
    if config_path and Path(config_path).exists():
        with open(config_path, "r", encoding="utf8") as handle:
            payload = yaml.safe_load(handle) or {}
        if isinstance(payload, dict):
            _merge_dataclass(config, payload)
    _validate(config)
    config.paths.log_dir = _resolve_path(config.paths.log_dir)
    config.paths.output_dir = _resolve_path(config.paths.output_dir)
    return config


settings = load_settings()

__all__ = [
    "AppSettings",
    "DiagnosticSettings",
    "EngineSettings",
    "OutputDefaults",
    "PathsSettings",
    "ProbeSettings",
    "TimeoutSettings",
    "load_settings",
    "settings",
]
