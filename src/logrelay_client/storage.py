from __future__ import annotations

import logging
import os
import re
import tempfile
import threading
from pathlib import Path
from typing import Dict, Optional, Protocol, Union

_logger = logging.getLogger(__name__)

SESSION_KEY = "logrelay_session"
OFFLINE_QUEUE_KEY = "logrelay_offline_queue"

_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


class KeyValueStorage(Protocol):
  """
  Durable key-value persistence, the local equivalent of browser storage.

  Implementations raise ``OSError`` when the backing store is unusable.
  """

  def get(self, key: str) -> Optional[str]: ...

  def set(self, key: str, value: str) -> None: ...

  def remove(self, key: str) -> None: ...


class MemoryStorage:
  def __init__(self) -> None:
    self._items: Dict[str, str] = {}
    self._lock = threading.Lock()

  def get(self, key: str) -> Optional[str]:
    with self._lock:
      return self._items.get(key)

  def set(self, key: str, value: str) -> None:
    with self._lock:
      self._items[key] = value

  def remove(self, key: str) -> None:
    with self._lock:
      self._items.pop(key, None)


class FileStorage:
  """
  One file per key under ``directory``.

  Writes go to a temporary file first and are swapped in with ``os.replace``
  so a crash mid-write never leaves a truncated value behind.
  """

  def __init__(self, directory: Union[str, Path]) -> None:
    self._directory = Path(directory).expanduser()
    self._lock = threading.Lock()

  @property
  def directory(self) -> Path:
    return self._directory

  def _path(self, key: str) -> Path:
    if not _KEY_PATTERN.match(key):
      raise ValueError(f"Invalid storage key: {key!r}")
    return self._directory / f"{key}.json"

  def get(self, key: str) -> Optional[str]:
    path = self._path(key)
    with self._lock:
      try:
        return path.read_text(encoding="utf-8")
      except FileNotFoundError:
        return None

  def set(self, key: str, value: str) -> None:
    path = self._path(key)
    with self._lock:
      self._directory.mkdir(parents=True, exist_ok=True)
      fd, tmp_name = tempfile.mkstemp(prefix=f".{key}.", dir=str(self._directory))
      try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
          fh.write(value)
        os.replace(tmp_name, path)
      except BaseException:
        try:
          os.unlink(tmp_name)
        except OSError:
          pass
        raise

  def remove(self, key: str) -> None:
    path = self._path(key)
    with self._lock:
      try:
        path.unlink()
      except FileNotFoundError:
        pass


class GuardedStorage:
  """
  Storage wrapper owned by a single component.

  The first failure logs one warning and switches the component to
  in-memory-only operation: later calls no longer touch the backing store.
  Nothing is raised to the caller.
  """

  def __init__(self, storage: KeyValueStorage, name: str) -> None:
    self._storage = storage
    self._name = name
    self._available = True
    self.last_error: Optional[str] = None

  @property
  def available(self) -> bool:
    return self._available

  def _degrade(self, action: str, exc: Exception) -> None:
    self.last_error = f"{type(exc).__name__}: {exc}"
    if self._available:
      self._available = False
      _logger.warning(
        "logrelay %s storage unavailable (%s failed: %s); continuing in memory only",
        self._name,
        action,
        exc,
      )

  def get(self, key: str) -> Optional[str]:
    if not self._available:
      return None
    try:
      return self._storage.get(key)
    except (OSError, ValueError) as exc:
      self._degrade("read", exc)
      return None

  def set(self, key: str, value: str) -> bool:
    if not self._available:
      return False
    try:
      self._storage.set(key, value)
      return True
    except (OSError, ValueError) as exc:
      self._degrade("write", exc)
      return False

  def remove(self, key: str) -> bool:
    if not self._available:
      return False
    try:
      self._storage.remove(key)
      return True
    except (OSError, ValueError) as exc:
      self._degrade("remove", exc)
      return False
