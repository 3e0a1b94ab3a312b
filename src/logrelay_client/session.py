from __future__ import annotations

import json
import os
import platform
import sys
import time
import uuid
from typing import Any, Callable, Dict, Optional

from .storage import SESSION_KEY, GuardedStorage, KeyValueStorage

DEFAULT_SESSION_DURATION = 24 * 60 * 60


def user_agent() -> str:
  return (
    f"{platform.python_implementation()}/{platform.python_version()} "
    f"({platform.system()} {platform.release()}; {platform.machine()})"
  )


def program_url() -> str:
  if sys.argv and sys.argv[0]:
    return os.path.abspath(sys.argv[0])
  return "<interactive>"


class SessionManager:
  """
  Issues a session id and keeps it across process restarts.

  A stored session is reused while it is younger than ``duration`` seconds.
  If storage is unusable the session lives in memory for the lifetime of
  the process.
  """

  def __init__(
    self,
    storage: KeyValueStorage,
    duration: float = DEFAULT_SESSION_DURATION,
    clock: Callable[[], float] = time.time,
  ) -> None:
    self._storage = GuardedStorage(storage, "session")
    self._duration = duration
    self._clock = clock
    self._session_id: Optional[str] = None

  @property
  def session_id(self) -> Optional[str]:
    return self._session_id

  @property
  def persistent(self) -> bool:
    return self._storage.available

  def initialize(self) -> str:
    stored = self._load()
    if stored is not None:
      self._session_id = stored
      return stored
    return self.renew()

  def renew(self) -> str:
    self._session_id = uuid.uuid4().hex
    self._persist()
    return self._session_id

  def clear(self) -> None:
    self._session_id = None
    self._storage.remove(SESSION_KEY)

  def _now_ms(self) -> int:
    return int(self._clock() * 1000)

  def _load(self) -> Optional[str]:
    raw = self._storage.get(SESSION_KEY)
    if not raw:
      return None
    try:
      data = json.loads(raw)
      session_id = data["sessionId"]
      issued_at = int(data["timestamp"])
    except (ValueError, KeyError, TypeError):
      # Corrupt record: start a new session over it.
      return None
    if not isinstance(session_id, str) or not session_id:
      return None
    if self._now_ms() - issued_at >= self._duration * 1000:
      return None
    return session_id

  def _persist(self) -> None:
    record = {
      "sessionId": self._session_id,
      "timestamp": self._now_ms(),
      "userAgent": user_agent(),
      "url": program_url(),
    }
    self._storage.set(SESSION_KEY, json.dumps(record))

  def metadata(self) -> Dict[str, Any]:
    return {
      "sessionId": self._session_id,
      "userAgent": user_agent(),
      "url": program_url(),
      "timestamp": self._now_ms(),
      "timezone": time.strftime("%Z"),
      "language": os.environ.get("LANG"),
      "platform": sys.platform,
      "pid": os.getpid(),
      "persistent": self.persistent,
    }
