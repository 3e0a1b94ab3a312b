from __future__ import annotations

import json
import os
import re
import sqlite3
import threading
from pathlib import Path
from typing import List, Optional, Tuple

from .models import CollectedEntry, EntryBatch

_SCHEMA = """
CREATE TABLE IF NOT EXISTS log_entries (
  id TEXT PRIMARY KEY,
  timestamp INTEGER NOT NULL,
  level TEXT NOT NULL,
  service TEXT NOT NULL,
  source TEXT NOT NULL,
  message TEXT NOT NULL,
  metadata TEXT NOT NULL DEFAULT '{}',
  batch_source TEXT,
  session_id TEXT,
  trace_id TEXT,
  received_at INTEGER NOT NULL DEFAULT (CAST(strftime('%s', 'now') AS INTEGER) * 1000)
);
CREATE INDEX IF NOT EXISTS idx_log_entries_timestamp ON log_entries(timestamp);
CREATE INDEX IF NOT EXISTS idx_log_entries_level ON log_entries(level);
CREATE INDEX IF NOT EXISTS idx_log_entries_service ON log_entries(service);
CREATE INDEX IF NOT EXISTS idx_log_entries_session ON log_entries(session_id);
CREATE VIRTUAL TABLE IF NOT EXISTS log_entries_fts USING fts5(
  message, service, source, metadata,
  content='log_entries'
);
CREATE TRIGGER IF NOT EXISTS log_entries_fts_insert AFTER INSERT ON log_entries BEGIN
  INSERT INTO log_entries_fts(rowid, message, service, source, metadata)
  VALUES (new.rowid, new.message, new.service, new.source, new.metadata);
END;
CREATE TRIGGER IF NOT EXISTS log_entries_fts_delete AFTER DELETE ON log_entries BEGIN
  INSERT INTO log_entries_fts(log_entries_fts, rowid, message, service, source, metadata)
  VALUES ('delete', old.rowid, old.message, old.service, old.source, old.metadata);
END;
CREATE TRIGGER IF NOT EXISTS log_entries_fts_update AFTER UPDATE ON log_entries BEGIN
  INSERT INTO log_entries_fts(log_entries_fts, rowid, message, service, source, metadata)
  VALUES ('delete', old.rowid, old.message, old.service, old.source, old.metadata);
  INSERT INTO log_entries_fts(rowid, message, service, source, metadata)
  VALUES (new.rowid, new.message, new.service, new.source, new.metadata);
END;
"""


class LogStorage:
  """
  Storage abstraction for collected entries.

  Tests are expected to monkeypatch get_storage() or pass an in-memory
  database path.
  """

  def write_batch(self, batch: EntryBatch) -> Tuple[int, int]:  # pragma: no cover - interface
    """
    Persist a batch; returns (accepted, duplicates).

    Entries are keyed by id, so a batch replayed by a client after an
    unacknowledged delivery is stored only once.
    """
    raise NotImplementedError

  def query_recent(
    self,
    limit: int = 100,
    level: Optional[str] = None,
    service: Optional[str] = None,
    search: Optional[str] = None,
  ) -> List[CollectedEntry]:  # pragma: no cover - interface
    raise NotImplementedError

  def count(self) -> int:  # pragma: no cover - interface
    raise NotImplementedError


class SqliteLogStorage(LogStorage):
  def __init__(self, path: str) -> None:
    self._path = path
    self._lock = threading.Lock()
    if path != ":memory:":
      Path(path).expanduser().parent.mkdir(parents=True, exist_ok=True)
    self._conn = sqlite3.connect(path, check_same_thread=False)
    with self._conn:
      indexed = self._conn.execute(
        "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = 'log_entries_fts'"
      ).fetchone()
      self._conn.executescript(_SCHEMA)
      if indexed is None:
        # Databases written before the index existed.
        self._conn.execute("INSERT INTO log_entries_fts(log_entries_fts) VALUES ('rebuild')")

  def write_batch(self, batch: EntryBatch) -> Tuple[int, int]:
    if not batch.entries:
      return 0, 0

    rows = [_entry_to_row(entry, batch.source) for entry in batch.entries]
    with self._lock, self._conn:
      before = self._conn.total_changes
      self._conn.executemany(
        """
        INSERT OR IGNORE INTO log_entries (
          id, timestamp, level, service, source, message, metadata,
          batch_source, session_id, trace_id
        )
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        rows,
      )
      accepted = self._conn.total_changes - before
    return accepted, len(rows) - accepted

  def query_recent(
    self,
    limit: int = 100,
    level: Optional[str] = None,
    service: Optional[str] = None,
    search: Optional[str] = None,
  ) -> List[CollectedEntry]:
    where = ["1 = 1"]
    params: list[object] = []
    if level:
      where.append("level = ?")
      params.append(level.lower())
    if service:
      where.append("service = ?")
      params.append(service)
    if search and _WORD.search(search):
      where.append("rowid IN (SELECT rowid FROM log_entries_fts WHERE log_entries_fts MATCH ?)")
      params.append(_match_query(search))
    elif search:
      # Nothing the full-text tokenizer would index.
      where.append("message LIKE ? ESCAPE '\\'")
      escaped = search.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
      params.append(f"%{escaped}%")

    with self._lock:
      rows = self._conn.execute(
        f"""
        SELECT id, timestamp, level, service, source, message, metadata
        FROM log_entries
        WHERE {' AND '.join(where)}
        ORDER BY timestamp DESC, rowid DESC
        LIMIT ?
        """,
        (*params, limit),
      ).fetchall()

    return [
      CollectedEntry(
        id=row[0],
        timestamp=row[1],
        level=row[2],
        service=row[3],
        source=row[4],
        message=row[5],
        metadata=json.loads(row[6] or "{}"),
      )
      for row in rows
    ]

  def count(self) -> int:
    with self._lock:
      (value,) = self._conn.execute("SELECT COUNT(*) FROM log_entries").fetchone()
    return int(value)

  def close(self) -> None:
    self._conn.close()


_storage: LogStorage | None = None


def get_storage() -> LogStorage:
  """
  Return the global storage instance.

  In tests this can be monkeypatched to avoid touching the filesystem.
  """
  global _storage
  if _storage is None:
    path = os.getenv("LOGRELAY_DATABASE_PATH", "_logrelay/logs.db")
    _storage = SqliteLogStorage(path)
  return _storage


_WORD = re.compile(r"[^\W_]")


def _match_query(search: str) -> str:
  """
  Quote ``search`` as a single FTS5 phrase with a prefix match on its last
  token, so user input never reaches the query syntax.
  """
  return '"' + search.replace('"', '""') + '"*'


def _entry_to_row(entry: CollectedEntry, batch_source: str) -> tuple:
  metadata = entry.metadata or {}
  return (
    entry.id,
    entry.timestamp,
    entry.level,
    entry.service,
    entry.source,
    entry.message,
    json.dumps(metadata, default=str),
    batch_source,
    metadata.get("sessionId"),
    metadata.get("traceId"),
  )
