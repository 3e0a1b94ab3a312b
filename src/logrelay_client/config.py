from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import urlparse

from .models import Level

CONFIG_FILE = Path("_logrelay/config.json")


@dataclass(frozen=True)
class ClientConfig:
  """
  Configuration for the log relay client.

  Durations are in seconds; the environment and the config file express
  them in milliseconds like the collector-side tooling does.
  """

  endpoint: str = "http://localhost:42003/api/logs/batch"
  service_name: str = "python"
  component: str = "console"
  enabled: bool = True
  batch_size: int = 10
  flush_interval: float = 5.0
  max_retries: int = 3
  retry_base_delay: float = 1.0
  max_queue_size: int = 1000
  max_offline_queue_size: int = 100
  performance_threshold_ms: float = 1.0
  request_timeout: float = 10.0
  replay_delay: float = 0.1
  session_duration: float = 24 * 60 * 60
  max_message_length: int = 10_000
  storage_dir: str = "_logrelay/state"
  capture_errors: bool = True
  # Entries below this level are dropped before they are queued.
  min_level: str = "trace"
  # Case-insensitive substrings; an entry whose message, metadata or
  # component contains one is dropped.
  skip_patterns: Tuple[str, ...] = ()

  def __post_init__(self) -> None:
    if not isinstance(self.skip_patterns, tuple):
      object.__setattr__(self, "skip_patterns", tuple(self.skip_patterns))
    _validate(self)

  @classmethod
  def from_env(cls) -> "ClientConfig":
    return cls.from_params_or_env()

  @classmethod
  def from_params_or_env(cls, **params: Any) -> "ClientConfig":
    """
    Build configuration from explicit parameters, falling back to environment variables.

    Priority:
      1. Explicit keyword arguments
      2. Environment variables (LOGRELAY_*)
      3. Config file (_logrelay/config.json)
      4. Defaults
    """
    unknown = set(params) - {f.name for f in fields(cls)}
    if unknown:
      raise TypeError(f"Unknown client config option(s): {', '.join(sorted(unknown))}")

    file_values = _read_config_file()
    values: Dict[str, Any] = {}
    for name, (env_var, file_key, parse) in _SOURCES.items():
      if params.get(name) is not None:
        values[name] = params[name]
        continue

      raw = os.getenv(env_var)
      if raw is not None:
        parsed = parse(raw)
        if parsed is not None:
          values[name] = parsed
          continue

      if file_key in file_values:
        parsed = parse(file_values[file_key])
        if parsed is not None:
          values[name] = parsed

    return cls(**values)


def _read_config_file() -> Dict[str, Any]:
  if not CONFIG_FILE.exists():
    return {}
  try:
    data = json.loads(CONFIG_FILE.read_text())
  except (OSError, ValueError):
    return {}
  if not isinstance(data, dict):
    return {}
  # Allow the settings to live under a "logrelay" section.
  section = data.get("logrelay")
  return section if isinstance(section, dict) else data


def _parse_str(raw: Any) -> Optional[str]:
  if raw is None:
    return None
  value = str(raw).strip()
  return value or None


def _parse_int(raw: Any) -> Optional[int]:
  try:
    return int(str(raw).strip())
  except (TypeError, ValueError):
    return None


def _parse_float(raw: Any) -> Optional[float]:
  try:
    return float(str(raw).strip())
  except (TypeError, ValueError):
    return None


def _parse_ms(raw: Any) -> Optional[float]:
  value = _parse_float(raw)
  return None if value is None else value / 1000.0


def _parse_bool(raw: Any) -> Optional[bool]:
  if isinstance(raw, bool):
    return raw
  value = str(raw).strip().lower()
  if value in ("1", "true", "yes", "on"):
    return True
  if value in ("0", "false", "no", "off"):
    return False
  return None


def _parse_enabled(raw: Any) -> Optional[bool]:
  parsed = _parse_bool(raw)
  # Unknown value -> treat as disabled for safety and log-only behavior.
  return False if parsed is None else parsed


def _parse_level(raw: Any) -> Optional[str]:
  level = Level.lookup(raw)
  return None if level is None else level.value


def _parse_patterns(raw: Any) -> Optional[Tuple[str, ...]]:
  if isinstance(raw, (list, tuple)):
    items = [str(item) for item in raw]
  else:
    items = re.split(r"[,;]", str(raw))
  return tuple(item.strip() for item in items if item.strip())


_SOURCES: Dict[str, tuple[str, str, Callable[[Any], Any]]] = {
  "endpoint": ("LOGRELAY_ENDPOINT", "endpoint", _parse_str),
  "service_name": ("LOGRELAY_SERVICE_NAME", "serviceName", _parse_str),
  "component": ("LOGRELAY_COMPONENT", "component", _parse_str),
  "enabled": ("LOGRELAY_ENABLED", "enabled", _parse_enabled),
  "batch_size": ("LOGRELAY_BATCH_SIZE", "batchSize", _parse_int),
  "flush_interval": ("LOGRELAY_FLUSH_INTERVAL_MS", "flushIntervalMs", _parse_ms),
  "max_retries": ("LOGRELAY_MAX_RETRIES", "maxRetries", _parse_int),
  "retry_base_delay": ("LOGRELAY_RETRY_DELAY_MS", "retryDelayMs", _parse_ms),
  "max_queue_size": ("LOGRELAY_MAX_QUEUE_SIZE", "maxQueueSize", _parse_int),
  "max_offline_queue_size": ("LOGRELAY_MAX_OFFLINE_QUEUE_SIZE", "maxOfflineQueueSize", _parse_int),
  "performance_threshold_ms": ("LOGRELAY_PERFORMANCE_THRESHOLD_MS", "performanceThresholdMs", _parse_float),
  "request_timeout": ("LOGRELAY_REQUEST_TIMEOUT_MS", "requestTimeoutMs", _parse_ms),
  "replay_delay": ("LOGRELAY_REPLAY_DELAY_MS", "replayDelayMs", _parse_ms),
  "session_duration": ("LOGRELAY_SESSION_DURATION_MS", "sessionDurationMs", _parse_ms),
  "max_message_length": ("LOGRELAY_MAX_MESSAGE_LENGTH", "maxMessageLength", _parse_int),
  "storage_dir": ("LOGRELAY_STORAGE_DIR", "storageDir", _parse_str),
  "capture_errors": ("LOGRELAY_CAPTURE_ERRORS", "captureErrors", _parse_bool),
  "min_level": ("LOGRELAY_LEVEL", "logLevel", _parse_level),
  "skip_patterns": ("LOGRELAY_SKIP_PATTERNS", "skipPatterns", _parse_patterns),
}


def _validate(config: ClientConfig) -> None:
  _validate_endpoint(config.endpoint)

  if config.batch_size < 1:
    raise ValueError(f"batch_size must be >= 1, got {config.batch_size}")
  if not 0 <= config.max_retries <= 10:
    raise ValueError(f"max_retries must be between 0 and 10, got {config.max_retries}")
  if config.max_queue_size < config.batch_size:
    raise ValueError(
      f"max_queue_size ({config.max_queue_size}) must be >= batch_size ({config.batch_size})"
    )
  if config.max_offline_queue_size < 1:
    raise ValueError(f"max_offline_queue_size must be >= 1, got {config.max_offline_queue_size}")
  if not 100 <= config.max_message_length <= 100_000:
    raise ValueError(
      f"max_message_length must be between 100 and 100000, got {config.max_message_length}"
    )

  for name in ("flush_interval", "retry_base_delay", "request_timeout", "session_duration", "performance_threshold_ms"):
    if getattr(config, name) <= 0:
      raise ValueError(f"{name} must be > 0, got {getattr(config, name)}")
  if config.replay_delay < 0:
    raise ValueError(f"replay_delay must be >= 0, got {config.replay_delay}")
  if Level.lookup(config.min_level) is None:
    raise ValueError(
      f"min_level must be one of {', '.join(level.value for level in Level)}, got {config.min_level!r}"
    )


def _validate_endpoint(url: str) -> None:
  parsed = urlparse(url)
  if parsed.scheme not in ("http", "https") or not parsed.netloc:
    raise ValueError(
      f"Invalid LOGRELAY_ENDPOINT '{url}'. "
      "Expected an http(s) URL like http://localhost:42003/api/logs/batch."
    )
