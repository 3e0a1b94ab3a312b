from __future__ import annotations

from typing import Any, Dict, List, Literal

from pydantic import BaseModel, Field

MAX_ENTRIES_PER_BATCH = 1000

WireLevel = Literal["trace", "debug", "info", "warn", "error", "fatal"]


class CollectedEntry(BaseModel):
  """
  One log entry as shipped by the client.
  """

  id: str = Field(..., min_length=1)
  timestamp: int = Field(..., description="Epoch milliseconds when the entry was created")
  level: WireLevel
  service: str
  source: str
  message: str
  metadata: Dict[str, Any] = Field(default_factory=dict)


class EntryBatch(BaseModel):
  """
  Envelope used by the client to send one batch.
  """

  entries: List[CollectedEntry] = Field(..., max_length=MAX_ENTRIES_PER_BATCH)
  timestamp: int
  source: str = "unknown"
