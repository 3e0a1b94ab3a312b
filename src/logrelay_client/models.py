from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple

DEFAULT_MAX_MESSAGE_LENGTH = 10_000


class Level(str, Enum):
  """
  Wire severity levels accepted by the collector (lowercase).
  """

  TRACE = "trace"
  DEBUG = "debug"
  INFO = "info"
  WARN = "warn"
  ERROR = "error"
  FATAL = "fatal"

  @classmethod
  def lookup(cls, value: Any) -> Optional["Level"]:
    """Strict variant of :meth:`parse`: unknown names give ``None``."""
    if isinstance(value, Level):
      return value
    name = str(value).strip().lower()
    try:
      return cls(name)
    except ValueError:
      return _LEVEL_ALIASES.get(name)

  @classmethod
  def parse(cls, value: Any) -> "Level":
    return cls.lookup(value) or cls.INFO

  @property
  def severity(self) -> int:
    return _SEVERITY[self]

  @classmethod
  def from_logging(cls, levelno: int) -> "Level":
    if levelno >= logging.CRITICAL:
      return cls.FATAL
    if levelno >= logging.ERROR:
      return cls.ERROR
    if levelno >= logging.WARNING:
      return cls.WARN
    if levelno >= logging.INFO:
      return cls.INFO
    if levelno >= logging.DEBUG:
      return cls.DEBUG
    return cls.TRACE


_LEVEL_ALIASES = {
  "log": Level.INFO,
  "print": Level.INFO,
  "warning": Level.WARN,
  "exception": Level.ERROR,
  "critical": Level.FATAL,
}

_SEVERITY = {level: rank for rank, level in enumerate(Level)}


def now_ms() -> int:
  return int(time.time() * 1000)


def new_id() -> str:
  return uuid.uuid4().hex


def truncate(message: str, limit: int = DEFAULT_MAX_MESSAGE_LENGTH) -> str:
  if len(message) <= limit:
    return message
  return message[:limit]


@dataclass(frozen=True)
class LogEntry:
  """
  One observed log event. Entries are never mutated once created.
  """

  id: str
  timestamp: int
  level: Level
  service: str
  source: str
  message: str
  metadata: Dict[str, Any] = field(default_factory=dict)
  session_id: Optional[str] = None
  trace_id: Optional[str] = None

  @classmethod
  def create(
    cls,
    level: Any,
    message: Any,
    *,
    service: str,
    source: str,
    metadata: Optional[Dict[str, Any]] = None,
    session_id: Optional[str] = None,
    trace_id: Optional[str] = None,
    max_message_length: int = DEFAULT_MAX_MESSAGE_LENGTH,
  ) -> "LogEntry":
    return cls(
      id=new_id(),
      timestamp=now_ms(),
      level=Level.parse(level),
      service=service,
      source=source,
      message=truncate(str(message), max_message_length),
      metadata=dict(metadata or {}),
      session_id=session_id,
      trace_id=trace_id or new_id(),
    )

  def to_payload(self, batch_id: Optional[str] = None) -> Dict[str, Any]:
    metadata = dict(self.metadata)
    if batch_id is not None:
      metadata["batchId"] = batch_id
    if self.session_id is not None:
      metadata["sessionId"] = self.session_id
    if self.trace_id is not None:
      metadata["traceId"] = self.trace_id
    return {
      "id": self.id,
      "timestamp": self.timestamp,
      "level": self.level.value,
      "service": self.service,
      "source": self.source,
      "message": self.message,
      "metadata": metadata,
    }

  def to_dict(self) -> Dict[str, Any]:
    return {
      "id": self.id,
      "timestamp": self.timestamp,
      "level": self.level.value,
      "service": self.service,
      "source": self.source,
      "message": self.message,
      "metadata": dict(self.metadata),
      "sessionId": self.session_id,
      "traceId": self.trace_id,
    }

  @classmethod
  def from_dict(cls, data: Dict[str, Any]) -> "LogEntry":
    return cls(
      id=str(data["id"]),
      timestamp=int(data["timestamp"]),
      level=Level.parse(data.get("level", "info")),
      service=str(data.get("service", "")),
      source=str(data.get("source", "")),
      message=str(data.get("message", "")),
      metadata=dict(data.get("metadata") or {}),
      session_id=data.get("sessionId"),
      trace_id=data.get("traceId"),
    )


@dataclass(frozen=True)
class Batch:
  """
  Ordered group of entries delivered together in one request.

  ``attempts`` counts delivery attempts already made; a retried batch is a
  copy produced by :meth:`next_attempt` and keeps the same ``id``.
  """

  id: str
  entries: Tuple[LogEntry, ...]
  created_at: int
  attempts: int = 0

  @classmethod
  def create(cls, entries: Iterable[LogEntry]) -> "Batch":
    return cls(id=new_id(), entries=tuple(entries), created_at=now_ms())

  def __len__(self) -> int:
    return len(self.entries)

  def next_attempt(self) -> "Batch":
    return replace(self, attempts=self.attempts + 1)

  def to_payload(self, source: str = "python") -> Dict[str, Any]:
    return {
      "entries": [entry.to_payload(self.id) for entry in self.entries],
      "timestamp": now_ms(),
      "source": source,
    }

  def to_dict(self) -> Dict[str, Any]:
    return {
      "id": self.id,
      "createdAt": self.created_at,
      "attempts": self.attempts,
      "entries": [entry.to_dict() for entry in self.entries],
    }

  @classmethod
  def from_dict(cls, data: Dict[str, Any]) -> "Batch":
    entries: List[LogEntry] = [LogEntry.from_dict(item) for item in data.get("entries", [])]
    return cls(
      id=str(data["id"]),
      entries=tuple(entries),
      created_at=int(data.get("createdAt", now_ms())),
      attempts=int(data.get("attempts", 0)),
    )
