from __future__ import annotations

import logging
import os
import threading
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from .models import Batch, LogEntry

BatchSender = Callable[[Batch], None]

_logger = logging.getLogger(__name__)

# Rolling window used by the per-call cost guard.
PERFORMANCE_WINDOW_SIZE = 100
PERFORMANCE_WINDOW_SECONDS = 60.0
PERFORMANCE_MIN_SAMPLES = 5


class LogQueue:
  """
  In-process accumulator for log entries.

  Entries are buffered in insertion order and packaged into batches of
  ``batch_size``. Once started, a full batch is packaged as soon as it
  fills and handed to ``sender``, which must not block on I/O. A background
  worker thread additionally flushes whatever is buffered every
  ``flush_interval`` seconds.

  Before :meth:`start` (or after :meth:`stop`) entries keep buffering up to
  ``maxsize``; beyond that the oldest entry is evicted.

  The implementation is **multi-process aware**: we track the process ID and
  restart the worker thread in a forked child on its next ``add``.
  """

  def __init__(
    self,
    sender: BatchSender,
    maxsize: int = 1000,
    batch_size: int = 10,
    flush_interval: float = 5.0,
    performance_threshold_ms: float = 1.0,
    clock: Callable[[], float] = time.perf_counter,
  ) -> None:
    self._buffer: Deque[LogEntry] = deque()
    self._sender: BatchSender = sender
    self._maxsize = maxsize
    self._batch_size = batch_size
    self._flush_interval = flush_interval
    self._threshold_ms = performance_threshold_ms
    self._clock = clock

    self._lock = threading.Lock()
    self._thread: Optional[threading.Thread] = None
    self._stopped = threading.Event()
    self._running = False
    # Track PID to detect forks and ensure a per-process worker thread.
    self._pid = os.getpid()

    self._enabled = True
    self._perf_disabled = False
    self._samples: Deque[Tuple[float, float]] = deque(maxlen=PERFORMANCE_WINDOW_SIZE)
    self._perf_lock = threading.Lock()

    self._accepted = 0
    self._dropped = 0
    self._batches = 0
    self._overflow_warned = False

  @property
  def enabled(self) -> bool:
    return self._enabled and not self._perf_disabled

  @property
  def performance_disabled(self) -> bool:
    return self._perf_disabled

  def __len__(self) -> int:
    with self._lock:
      return len(self._buffer)

  def start(self) -> None:
    """
    Start the periodic flush thread and enable automatic batching.

    Safe to call multiple times and across forked processes.
    """
    current_pid = os.getpid()
    with self._lock:
      if self._pid != current_pid:
        # We are in a new process (after fork). Reset thread state and event.
        self._pid = current_pid
        self._stopped = threading.Event()
        self._thread = None

      self._running = True
      if self._thread is None or not self._thread.is_alive():
        self._stopped = threading.Event()
        self._thread = threading.Thread(
          target=self._run, args=(self._stopped,), name="logrelay-client-queue", daemon=True
        )
        self._thread.start()

    # Entries buffered before start go out now.
    self.flush()

  def stop(self, flush: bool = True, timeout: float = 1.0) -> List[Batch]:
    with self._lock:
      self._running = False
      self._stopped.set()
      thread = self._thread
      self._thread = None
    if thread is not None and thread.is_alive() and thread is not threading.current_thread():
      thread.join(timeout=timeout)
    if flush:
      return self.flush(force=True)
    return []

  def add(self, entry: LogEntry) -> bool:
    """
    Append an entry to the open batch. Never blocks on delivery.

    Returns False when the queue is disabled.
    """
    if not self._enabled or self._perf_disabled:
      return False

    started = self._clock()
    if self._running and self._pid != os.getpid():
      self.start()

    ready: List[Batch] = []
    overflowed = False
    with self._lock:
      self._buffer.append(entry)
      self._accepted += 1
      if len(self._buffer) > self._maxsize:
        self._buffer.popleft()
        self._dropped += 1
        overflowed = True
      if self._running and len(self._buffer) >= self._batch_size:
        ready = self._take_batches(force=False)

    if overflowed and not self._overflow_warned:
      self._overflow_warned = True
      _logger.warning("logrelay queue size limit (%s) reached, dropping oldest entries", self._maxsize)

    self._dispatch(ready)
    self._record_cost((self._clock() - started) * 1000.0)
    return True

  def flush(self, force: bool = False) -> List[Batch]:
    """
    Package buffered entries and hand them to the sender.

    Every full batch goes out; with ``force`` the partial remainder too.
    """
    with self._lock:
      batches = self._take_batches(force)
    self._dispatch(batches)
    return batches

  def enable(self) -> bool:
    """
    Resume accepting entries.

    Refused while the rolling per-call cost is still above the threshold.
    """
    with self._perf_lock:
      if self._violates_budget():
        _logger.warning(
          "logrelay cannot enable: average add() cost %.3fms exceeds %.3fms",
          self._average_ms(),
          self._threshold_ms,
        )
        return False
      self._perf_disabled = False
    self._enabled = True
    return True

  def disable(self) -> None:
    self._enabled = False

  def clear(self) -> int:
    with self._lock:
      count = len(self._buffer)
      self._buffer.clear()
    return count

  def stats(self) -> Dict[str, Any]:
    with self._lock:
      queued = len(self._buffer)
    with self._perf_lock:
      avg = self._average_ms()
    return {
      "queued": queued,
      "accepted": self._accepted,
      "dropped": self._dropped,
      "batches": self._batches,
      "enabled": self.enabled,
      "performance_disabled": self._perf_disabled,
      "avg_add_ms": avg,
    }

  def _take_batches(self, force: bool) -> List[Batch]:
    # Caller holds self._lock.
    batches: List[Batch] = []
    while len(self._buffer) >= self._batch_size:
      batches.append(Batch.create(self._buffer.popleft() for _ in range(self._batch_size)))
    if force and self._buffer:
      batches.append(Batch.create(self._buffer))
      self._buffer.clear()
    self._batches += len(batches)
    return batches

  def _dispatch(self, batches: List[Batch]) -> None:
    for batch in batches:
      try:
        self._sender(batch)
      except Exception:
        _logger.exception("logrelay sender failed for batch %s", batch.id)

  def _record_cost(self, duration_ms: float) -> None:
    with self._perf_lock:
      self._samples.append((self._clock(), duration_ms))
      if self._perf_disabled or not self._violates_budget():
        return
      self._perf_disabled = True
      avg = self._average_ms()
    _logger.warning(
      "logrelay performance threshold exceeded (%.3fms avg > %.3fms), disabling log capture",
      avg,
      self._threshold_ms,
    )

  def _prune(self) -> None:
    cutoff = self._clock() - PERFORMANCE_WINDOW_SECONDS
    while self._samples and self._samples[0][0] < cutoff:
      self._samples.popleft()

  def _average_ms(self) -> float:
    self._prune()
    if not self._samples:
      return 0.0
    return sum(ms for _, ms in self._samples) / len(self._samples)

  def _violates_budget(self) -> bool:
    avg = self._average_ms()
    return len(self._samples) >= PERFORMANCE_MIN_SAMPLES and avg > self._threshold_ms

  def _run(self, stopped: threading.Event) -> None:
    while not stopped.wait(self._flush_interval):
      try:
        self.flush(force=True)
      except Exception:
        # The flush thread must survive anything a sender does.
        _logger.exception("logrelay periodic flush failed")
