from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from .models import Batch
from .storage import OFFLINE_QUEUE_KEY, GuardedStorage, KeyValueStorage
from .transport import DeliveryOutcome

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DrainResult:
  replayed: int
  failed: int
  remaining: int


class OfflineStore:
  """
  Durable FIFO of batches that could not be delivered live.

  Every change is persisted, either immediately or by a later
  :meth:`persist` call, so the queue survives a process restart. At most
  ``max_size`` batches are kept; the oldest is evicted first.
  """

  def __init__(self, storage: KeyValueStorage, max_size: int = 100) -> None:
    self._storage = GuardedStorage(storage, "offline queue")
    self._max_size = max_size
    self._batches: List[Batch] = []
    self._lock = threading.Lock()
    self._draining = threading.Lock()
    self._persisting = threading.Lock()
    self.evicted = 0

  def __len__(self) -> int:
    with self._lock:
      return len(self._batches)

  @property
  def persistent(self) -> bool:
    return self._storage.available

  def load(self) -> int:
    raw = self._storage.get(OFFLINE_QUEUE_KEY)
    loaded: List[Batch] = []
    if raw:
      try:
        loaded = [Batch.from_dict(item) for item in json.loads(raw)]
      except (ValueError, KeyError, TypeError) as exc:
        _logger.warning("logrelay discarded unreadable offline queue: %s", exc)
        loaded = []
    with self._lock:
      self._batches = loaded[-self._max_size:]
    return len(loaded)

  def snapshot(self) -> List[Batch]:
    with self._lock:
      return list(self._batches)

  def enqueue(self, batch: Batch, persist: bool = True) -> Optional[Batch]:
    """
    Append ``batch``; returns the evicted batch when the cap was exceeded.

    With ``persist=False`` only the in-memory queue changes and the caller
    is responsible for calling :meth:`persist` later, off the hot path.
    """
    evicted: Optional[Batch] = None
    with self._lock:
      self._batches.append(batch)
      if len(self._batches) > self._max_size:
        evicted = self._batches.pop(0)
        self.evicted += 1
    if persist:
      self.persist()
    if evicted is not None:
      _logger.warning(
        "logrelay offline queue full (%s), dropped oldest batch %s (%s entries)",
        self._max_size,
        evicted.id,
        len(evicted),
      )
    return evicted

  def remove(self, batch_id: str) -> bool:
    with self._lock:
      remaining = [b for b in self._batches if b.id != batch_id]
      if len(remaining) == len(self._batches):
        return False
      self._batches = remaining
    self.persist()
    return True

  def requeue(self, batch: Batch) -> bool:
    """Move ``batch`` behind everything queued after it."""
    with self._lock:
      remaining = [b for b in self._batches if b.id != batch.id]
      if len(remaining) == len(self._batches):
        # Evicted while it was being replayed.
        return False
      remaining.append(batch)
      self._batches = remaining
    self.persist()
    return True

  def clear(self) -> int:
    with self._lock:
      count = len(self._batches)
      self._batches = []
    self.persist()
    return count

  def drain_on_reconnect(
    self,
    send: Callable[[Batch], DeliveryOutcome],
    replay_delay: float = 0.1,
    should_continue: Callable[[], bool] = lambda: True,
    sleep: Callable[[float], None] = time.sleep,
  ) -> DrainResult:
    """
    Replay queued batches in enqueue order, one at a time.

    A batch leaves the queue only when its replay succeeds; a failed batch
    goes back to the tail for the next reconnect. Concurrent calls return
    immediately without replaying anything.
    """
    if not self._draining.acquire(blocking=False):
      return DrainResult(replayed=0, failed=0, remaining=len(self))

    replayed = failed = 0
    try:
      pending = self.snapshot()
      if pending:
        _logger.info("logrelay replaying offline queue, count: %s", len(pending))
      for index, batch in enumerate(pending):
        if not should_continue():
          break
        outcome = send(batch)
        if outcome.ok:
          self.remove(batch.id)
          replayed += 1
        else:
          self.requeue(batch)
          failed += 1
        if index < len(pending) - 1 and replay_delay > 0:
          sleep(replay_delay)
    finally:
      self._draining.release()

    return DrainResult(replayed=replayed, failed=failed, remaining=len(self))

  def persist(self) -> None:
    """
    Write the current queue to storage.

    Writers are serialized and each one snapshots the queue after taking
    the write lock, so the last write always reflects the latest state.
    Producers only contend for the short in-memory snapshot.
    """
    with self._persisting:
      batches = self.snapshot()
      try:
        data = json.dumps([batch.to_dict() for batch in batches])
      except (TypeError, ValueError) as exc:
        _logger.warning("logrelay could not serialize offline queue: %s", exc)
        return
      self._storage.set(OFFLINE_QUEUE_KEY, data)
