"""Environment-driven settings for the sync client."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping


ROOT = Path(__file__).resolve().parents[1]


def _load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = (env.get(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc


@dataclass(frozen=True)
class Settings:
    api_url: str = ""
    api_key: str | None = None
    default_stale_time_ms: float = 0.0
    chat_stale_time_ms: float = 10000.0
    request_timeout_s: float | None = 30.0
    log_level: str = "INFO"

    @property
    def remote_enabled(self) -> bool:
        return bool(self.api_url)


def load_settings(environ: Mapping[str, str] | None = None, env_file: Path | None = None) -> Settings:
    if environ is None:
        _load_env_file(env_file or ROOT / "app" / ".env")
        environ = os.environ
    timeout = _float(environ, "TEAMSYNC_REQUEST_TIMEOUT_S", 30.0)
    return Settings(
        api_url=(environ.get("TEAMSYNC_API_URL") or "").strip().rstrip("/"),
        api_key=(environ.get("TEAMSYNC_API_KEY") or "").strip() or None,
        default_stale_time_ms=_float(environ, "TEAMSYNC_STALE_TIME_MS", 0.0),
        chat_stale_time_ms=_float(environ, "TEAMSYNC_CHAT_STALE_TIME_MS", 10000.0),
        request_timeout_s=timeout if timeout > 0 else None,
        log_level=(environ.get("TEAMSYNC_LOG_LEVEL") or "INFO").strip().upper() or "INFO",
    )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO))
