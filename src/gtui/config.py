"""Configuration loader: YAML file with environment variable fallbacks."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .services.gro_session import DEFAULT_EXECUTABLE, DEFAULT_PROMPT_MARKER

_DEFAULT_DEBOUNCE_MS = 50


@dataclass
class GroConfig:
    executable: str = DEFAULT_EXECUTABLE
    model: str | None = None
    provider: str | None = None
    prompt_marker: str = DEFAULT_PROMPT_MARKER


@dataclass
class UiConfig:
    show_thinking: bool = False
    paste_debounce_ms: int = _DEFAULT_DEBOUNCE_MS
    log_file: Path | None = None

    @property
    def paste_debounce(self) -> float:
        return self.paste_debounce_ms / 1000


@dataclass
class AppConfig:
    gro: GroConfig = field(default_factory=GroConfig)
    ui: UiConfig = field(default_factory=UiConfig)


def _get_config_path() -> Path:
    override = os.environ.get("GTUI_CONFIG")
    if override:
        return Path(os.path.expanduser(override))
    return Path.home() / ".gtui" / "config.yaml"


def _as_bool(value: Any) -> bool:
    return str(value).lower() not in ("false", "0", "no", "off", "")


def load_config(config_path: Path | None = None) -> AppConfig:
    raw: dict[str, Any] = {}
    path = config_path or _get_config_path()

    if path.exists():
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"Config file {path} must contain a mapping")

    gro_raw = raw.get("gro") or {}
    executable = gro_raw.get("executable") or os.environ.get("GTUI_GRO_BIN", DEFAULT_EXECUTABLE)
    model = gro_raw.get("model") or os.environ.get("GTUI_MODEL") or None
    provider = gro_raw.get("provider") or os.environ.get("GTUI_PROVIDER") or None
    prompt_marker = gro_raw.get("prompt_marker") or os.environ.get("GTUI_PROMPT_MARKER", DEFAULT_PROMPT_MARKER)
    if not str(prompt_marker).strip():
        raise ValueError(f"gro.prompt_marker must not be blank ({path})")

    ui_raw = raw.get("ui") or {}
    show_thinking = _as_bool(ui_raw.get("show_thinking", os.environ.get("GTUI_SHOW_THINKING", "false")))
    try:
        debounce_ms = int(ui_raw.get("paste_debounce_ms", os.environ.get("GTUI_PASTE_DEBOUNCE_MS", _DEFAULT_DEBOUNCE_MS)))
    except (TypeError, ValueError):
        raise ValueError(f"ui.paste_debounce_ms must be an integer ({path})") from None
    if not 1 <= debounce_ms <= 1000:
        raise ValueError(f"ui.paste_debounce_ms must be between 1 and 1000, got {debounce_ms} ({path})")
    log_file_raw = ui_raw.get("log_file") or os.environ.get("GTUI_LOG_FILE")
    log_file = Path(os.path.expanduser(str(log_file_raw))) if log_file_raw else None

    return AppConfig(
        gro=GroConfig(
            executable=str(executable),
            model=str(model) if model else None,
            provider=str(provider) if provider else None,
            prompt_marker=str(prompt_marker),
        ),
        ui=UiConfig(
            show_thinking=show_thinking,
            paste_debounce_ms=debounce_ms,
            log_file=log_file,
        ),
    )
