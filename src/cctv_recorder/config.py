"""Configuration management for the CCTV recorder."""
from __future__ import annotations

import json
import math
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Mapping

from .encoder import DEFAULT_BITRATE, DEFAULT_TIMESLICE
from .storage import DEFAULT_BUCKET, DEFAULT_DOWNLOADS_DIR

DEFAULT_CONFIG_PATH = Path("data/config.json")


class StopPolicy(str, Enum):
    """How a stop request treats a camera whose status is not ``recording``."""

    WARN = "warn"
    STRICT = "strict"


DEFAULT_STOP_POLICY = StopPolicy.WARN


class SaveMode(str, Enum):
    """Who answers the save decision for finished recordings."""

    PROMPT = "prompt"
    UPLOAD = "upload"
    DOWNLOAD = "download"
    BOTH = "both"


def _finite_positive(value: Any, label: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{label} must be numeric") from exc
    if not math.isfinite(number) or number <= 0:
        raise ValueError(f"{label} must be a positive finite value")
    return number


@dataclass(frozen=True, slots=True)
class CaptureSettings:
    """Frame sampling and encoding parameters."""

    fps: int = 15
    bitrate: int = DEFAULT_BITRATE
    timeslice_seconds: float = DEFAULT_TIMESLICE
    flush_grace_seconds: float = 0.1
    tick_interval_seconds: float = 1.0
    default_width: int = 640
    default_height: int = 480

    def __post_init__(self) -> None:
        if int(self.fps) < 1 or int(self.fps) > 60:
            raise ValueError("Capture fps must be between 1 and 60")
        if int(self.bitrate) < 100_000:
            raise ValueError("Capture bitrate must be at least 100000 bits per second")
        if self.default_width <= 0 or self.default_height <= 0:
            raise ValueError("Default canvas dimensions must be positive integers")
        object.__setattr__(self, "fps", int(self.fps))
        object.__setattr__(self, "bitrate", int(self.bitrate))
        object.__setattr__(
            self, "timeslice_seconds", _finite_positive(self.timeslice_seconds, "Timeslice")
        )
        object.__setattr__(
            self,
            "tick_interval_seconds",
            _finite_positive(self.tick_interval_seconds, "Tick interval"),
        )
        grace = float(self.flush_grace_seconds)
        if not math.isfinite(grace) or grace < 0 or grace > 5:
            raise ValueError("Flush grace must be between 0 and 5 seconds")
        object.__setattr__(self, "flush_grace_seconds", grace)

    @property
    def default_size(self) -> tuple[int, int]:
        return (int(self.default_width), int(self.default_height))

    def to_dict(self) -> dict[str, float | int]:
        return {
            "fps": self.fps,
            "bitrate": self.bitrate,
            "timeslice_seconds": self.timeslice_seconds,
            "flush_grace_seconds": self.flush_grace_seconds,
            "tick_interval_seconds": self.tick_interval_seconds,
            "default_width": self.default_width,
            "default_height": self.default_height,
        }


DEFAULT_CAPTURE_SETTINGS = CaptureSettings()


@dataclass(frozen=True, slots=True)
class LedgerSettings:
    """Where the recording ledger and object storage live."""

    base_url: str | None = None
    api_key: str | None = None
    bucket: str = DEFAULT_BUCKET
    timeout: float = 10.0

    def __post_init__(self) -> None:
        if self.base_url is not None:
            cleaned = self.base_url.strip()
            if cleaned and not cleaned.startswith(("http://", "https://")):
                raise ValueError("Ledger URL must start with http:// or https://")
            object.__setattr__(self, "base_url", cleaned.rstrip("/") or None)
        if not isinstance(self.bucket, str) or not self.bucket.strip():
            raise ValueError("Storage bucket must be a non-empty string")
        object.__setattr__(self, "bucket", self.bucket.strip())
        object.__setattr__(self, "timeout", _finite_positive(self.timeout, "Ledger timeout"))

    @property
    def configured(self) -> bool:
        return bool(self.base_url)

    def to_dict(self) -> dict[str, object]:
        return {
            "base_url": self.base_url,
            "api_key": self.api_key,
            "bucket": self.bucket,
            "timeout": self.timeout,
        }


DEFAULT_LEDGER_SETTINGS = LedgerSettings()


@dataclass(frozen=True, slots=True)
class SaveSettings:
    """How finished recordings are saved."""

    mode: SaveMode = SaveMode.PROMPT
    downloads_dir: str = str(DEFAULT_DOWNLOADS_DIR)
    decision_timeout: float | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "mode", SaveMode(self.mode))
        if not isinstance(self.downloads_dir, str) or not self.downloads_dir.strip():
            raise ValueError("Downloads directory must be a non-empty string")
        if self.decision_timeout is not None:
            object.__setattr__(
                self,
                "decision_timeout",
                _finite_positive(self.decision_timeout, "Decision timeout"),
            )

    def to_dict(self) -> dict[str, object]:
        return {
            "mode": self.mode.value,
            "downloads_dir": self.downloads_dir,
            "decision_timeout": self.decision_timeout,
        }


DEFAULT_SAVE_SETTINGS = SaveSettings()


def _parse_capture_settings(value: Any, *, default: CaptureSettings) -> CaptureSettings:
    if value is None:
        return default
    if isinstance(value, CaptureSettings):
        return value
    if not isinstance(value, Mapping):
        raise ValueError("Capture settings must be provided as a mapping")
    merged = default.to_dict()
    for key in merged:
        if key in value and value[key] is not None:
            merged[key] = value[key]
    try:
        return CaptureSettings(
            fps=int(float(merged["fps"])),
            bitrate=int(float(merged["bitrate"])),
            timeslice_seconds=float(merged["timeslice_seconds"]),
            flush_grace_seconds=float(merged["flush_grace_seconds"]),
            tick_interval_seconds=float(merged["tick_interval_seconds"]),
            default_width=int(float(merged["default_width"])),
            default_height=int(float(merged["default_height"])),
        )
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid capture settings: {exc}") from exc


def _parse_ledger_settings(value: Any, *, default: LedgerSettings) -> LedgerSettings:
    if value is None:
        return default
    if isinstance(value, LedgerSettings):
        return value
    if not isinstance(value, Mapping):
        raise ValueError("Ledger settings must be provided as a mapping")
    base_url = value.get("base_url", default.base_url)
    api_key = value.get("api_key", default.api_key)
    if base_url is not None and not isinstance(base_url, str):
        raise ValueError("Ledger URL must be a string")
    if api_key is not None and not isinstance(api_key, str):
        raise ValueError("Ledger API key must be a string")
    return LedgerSettings(
        base_url=base_url,
        api_key=api_key or None,
        bucket=value.get("bucket", default.bucket),
        timeout=value.get("timeout", default.timeout),
    )


def _parse_save_settings(value: Any, *, default: SaveSettings) -> SaveSettings:
    if value is None:
        return default
    if isinstance(value, SaveSettings):
        return value
    if not isinstance(value, Mapping):
        raise ValueError("Save settings must be provided as a mapping")
    mode_raw = value.get("mode", default.mode)
    try:
        mode = SaveMode(mode_raw.strip().lower() if isinstance(mode_raw, str) else mode_raw)
    except ValueError as exc:
        raise ValueError(f"Unknown save mode: {mode_raw}") from exc
    timeout = value.get("decision_timeout", default.decision_timeout)
    return SaveSettings(
        mode=mode,
        downloads_dir=value.get("downloads_dir", default.downloads_dir),
        decision_timeout=timeout,
    )


def _parse_stop_policy(value: Any, *, default: StopPolicy) -> StopPolicy:
    if value is None:
        return default
    if isinstance(value, StopPolicy):
        return value
    if isinstance(value, str):
        try:
            return StopPolicy(value.strip().lower())
        except ValueError as exc:
            raise ValueError(f"Unknown stop policy: {value}") from exc
    raise ValueError("Stop policy must be a string")


class ConfigManager:
    """Stores configuration state on disk with thread-safety."""

    def __init__(self, config_path: Path | str = DEFAULT_CONFIG_PATH) -> None:
        self._path = Path(config_path)
        self._lock = Lock()
        self._ensure_parent()
        (
            self._capture,
            self._ledger,
            self._save_settings,
            self._stop_policy,
        ) = self._load()

    def _ensure_parent(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def _load(self) -> tuple[CaptureSettings, LedgerSettings, SaveSettings, StopPolicy]:
        if not self._path.exists():
            return (
                DEFAULT_CAPTURE_SETTINGS,
                DEFAULT_LEDGER_SETTINGS,
                DEFAULT_SAVE_SETTINGS,
                DEFAULT_STOP_POLICY,
            )
        try:
            payload = json.loads(self._path.read_text())
            if not isinstance(payload, dict):
                raise ValueError("Configuration file must contain a JSON object")
            capture = _parse_capture_settings(
                payload.get("capture"), default=DEFAULT_CAPTURE_SETTINGS
            )
            ledger = _parse_ledger_settings(payload.get("ledger"), default=DEFAULT_LEDGER_SETTINGS)
            save_settings = _parse_save_settings(payload.get("save"), default=DEFAULT_SAVE_SETTINGS)
            stop_policy = _parse_stop_policy(
                payload.get("stop_policy"), default=DEFAULT_STOP_POLICY
            )
            return capture, ledger, save_settings, stop_policy
        except (OSError, ValueError) as exc:
            raise RuntimeError(f"Failed to load configuration: {exc}") from exc

    def _save(self) -> None:
        payload: Dict[str, Any] = {
            "capture": self._capture.to_dict(),
            "ledger": self._ledger.to_dict(),
            "save": self._save_settings.to_dict(),
            "stop_policy": self._stop_policy.value,
        }
        self._path.write_text(json.dumps(payload, indent=2))

    @property
    def path(self) -> Path:
        return self._path

    def get_capture_settings(self) -> CaptureSettings:
        with self._lock:
            return self._capture

    def set_capture_settings(self, data: Mapping[str, Any] | CaptureSettings) -> CaptureSettings:
        settings = _parse_capture_settings(data, default=self._capture)
        with self._lock:
            self._capture = settings
            self._save()
        return settings

    def get_ledger_settings(self) -> LedgerSettings:
        """Return ledger settings with ``CCTV_LEDGER_URL`` taking precedence."""

        with self._lock:
            settings = self._ledger
        override = os.getenv("CCTV_LEDGER_URL")
        if override and override.strip():
            return LedgerSettings(
                base_url=override,
                api_key=os.getenv("CCTV_LEDGER_API_KEY") or settings.api_key,
                bucket=settings.bucket,
                timeout=settings.timeout,
            )
        return settings

    def set_ledger_settings(self, data: Mapping[str, Any] | LedgerSettings) -> LedgerSettings:
        settings = _parse_ledger_settings(data, default=self._ledger)
        with self._lock:
            self._ledger = settings
            self._save()
        return settings

    def get_save_settings(self) -> SaveSettings:
        with self._lock:
            settings = self._save_settings
        override = os.getenv("CCTV_DOWNLOADS_DIR")
        if override and override.strip():
            return SaveSettings(
                mode=settings.mode,
                downloads_dir=override.strip(),
                decision_timeout=settings.decision_timeout,
            )
        return settings

    def set_save_settings(self, data: Mapping[str, Any] | SaveSettings) -> SaveSettings:
        settings = _parse_save_settings(data, default=self._save_settings)
        with self._lock:
            self._save_settings = settings
            self._save()
        return settings

    def get_stop_policy(self) -> StopPolicy:
        with self._lock:
            return self._stop_policy

    def set_stop_policy(self, value: Any) -> StopPolicy:
        policy = _parse_stop_policy(value, default=self._stop_policy)
        with self._lock:
            self._stop_policy = policy
            self._save()
        return policy


__all__ = [
    "CaptureSettings",
    "ConfigManager",
    "DEFAULT_CAPTURE_SETTINGS",
    "DEFAULT_CONFIG_PATH",
    "DEFAULT_LEDGER_SETTINGS",
    "DEFAULT_SAVE_SETTINGS",
    "DEFAULT_STOP_POLICY",
    "LedgerSettings",
    "SaveMode",
    "SaveSettings",
    "StopPolicy",
]
