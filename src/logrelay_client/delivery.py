from __future__ import annotations

import logging
import threading
from concurrent import futures
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, Optional

from .models import Batch
from .offline import DrainResult, OfflineStore
from .retry import RetryController, Scheduler, timer_scheduler
from .transport import DeliveryOutcome, DeliveryStatus, HttpTransport

_logger = logging.getLogger(__name__)


class DeliveryStats:
  """
  Counters shared by the delivery side of the client.

  ``record_error`` is the internal error channel: failures that must not
  reach host code are counted here and kept as ``last_error``.
  """

  def __init__(self) -> None:
    self._lock = threading.Lock()
    self.sent = 0
    self.sent_batches = 0
    self.failed = 0
    self.rejected = 0
    self.replayed = 0
    self.errors = 0
    self.last_error: Optional[str] = None

  def add(self, name: str, amount: int = 1) -> None:
    with self._lock:
      setattr(self, name, getattr(self, name) + amount)

  def record_error(self, component: str, exc: BaseException) -> None:
    with self._lock:
      self.errors += 1
      self.last_error = f"{component}: {type(exc).__name__}: {exc}"

  def as_dict(self) -> Dict[str, Any]:
    with self._lock:
      return {
        "sent": self.sent,
        "sent_batches": self.sent_batches,
        "failed": self.failed,
        "rejected": self.rejected,
        "replayed": self.replayed,
        "errors": self.errors,
        "last_error": self.last_error,
      }


class BatchDispatcher:
  """
  Routes packaged batches to the transport.

  Sends run on a thread pool so producers never wait on the network.
  Failed batches go through the retry controller; when its budget is
  exhausted they land in the offline store, except permanent rejections,
  which are dropped and counted.
  """

  def __init__(
    self,
    transport: HttpTransport,
    offline: OfflineStore,
    *,
    max_retries: int = 3,
    retry_base_delay: float = 1.0,
    replay_delay: float = 0.1,
    executor: Optional[Executor] = None,
    scheduler: Scheduler = timer_scheduler,
    stats: Optional[DeliveryStats] = None,
    max_workers: int = 4,
  ) -> None:
    self._transport = transport
    self._offline = offline
    self._replay_delay = replay_delay
    self._owns_executor = executor is None
    self._executor: Executor = executor or ThreadPoolExecutor(
      max_workers=max_workers, thread_name_prefix="logrelay-delivery"
    )
    self.stats = stats or DeliveryStats()
    self.retry = RetryController(
      resubmit=self._resubmit,
      on_exhausted=self._exhausted,
      max_retries=max_retries,
      base_delay=retry_base_delay,
      scheduler=scheduler,
    )
    self._online = True
    self._closed = False
    # Pending futures -> the batch they deliver, when there is one.
    self._inflight: Dict[Future, Optional[Batch]] = {}
    self._lock = threading.Lock()

  @property
  def online(self) -> bool:
    return self._online

  def set_online(self, online: bool) -> None:
    self._online = online

  def submit(self, batch: Batch) -> None:
    """Hand ``batch`` over for delivery; returns immediately."""
    if self._closed:
      self._offline.enqueue(batch)
      return
    if not self._online:
      # Keep enqueue order on this thread; the file write runs on the pool.
      self._offline.enqueue(batch, persist=False)
      self._spawn(self._offline.persist, fallback=self._offline.persist)
      return
    self._spawn(self._deliver, batch, batch=batch, fallback=lambda: self._offline.enqueue(batch))

  def drain(self) -> Optional[Future]:
    """Replay the offline queue in the background if we are online."""
    if self._closed or not self._online or not len(self._offline):
      return None
    return self._spawn(self._drain_offline)

  def shutdown(self, timeout: float = 2.0) -> None:
    """
    Stop accepting work, park retry-pending batches offline and wait up to
    ``timeout`` seconds for in-flight sends.

    Sends still waiting for a worker after the timeout are cancelled and
    their batches parked offline. Sends already running finish on their
    own; a failure then lands offline through the exhausted retry budget.
    """
    self._closed = True
    for batch in self.retry.cancel_all():
      self._offline.enqueue(batch, persist=False)

    with self._lock:
      inflight = list(self._inflight)
    if inflight:
      futures.wait(inflight, timeout=timeout)

    with self._lock:
      leftover = list(self._inflight.items())
    for future, batch in leftover:
      if future.cancel() and batch is not None:
        self._offline.enqueue(batch, persist=False)
    self._offline.persist()

    if self._owns_executor:
      self._executor.shutdown(wait=False, cancel_futures=True)

  def _spawn(
    self,
    fn: Callable[..., Any],
    *args: Any,
    batch: Optional[Batch] = None,
    fallback: Optional[Callable[[], Any]] = None,
  ) -> Optional[Future]:
    try:
      future = self._executor.submit(fn, *args)
    except RuntimeError as exc:
      # Executor already shut down (interpreter exit).
      self.stats.record_error("dispatch", exc)
      if fallback is not None:
        fallback()
      return None
    with self._lock:
      if not future.done():
        self._inflight[future] = batch
    future.add_done_callback(self._forget)
    return future

  def _forget(self, future: Future) -> None:
    with self._lock:
      self._inflight.pop(future, None)

  def _send(self, batch: Batch) -> DeliveryOutcome:
    try:
      return self._transport.send(batch)
    except Exception as exc:
      self.stats.record_error("transport", exc)
      return DeliveryOutcome(DeliveryStatus.RETRYABLE, error=f"{type(exc).__name__}: {exc}")

  def _deliver(self, batch: Batch) -> DeliveryOutcome:
    outcome = self._send(batch)
    if outcome.ok:
      self.retry.cancel(batch.id)
      self.stats.add("sent", len(batch))
      self.stats.add("sent_batches")
    else:
      self.retry.on_failure(batch, outcome)
    return outcome

  def _resubmit(self, batch: Batch) -> None:
    self._spawn(self._deliver, batch, batch=batch, fallback=lambda: self._offline.enqueue(batch))

  def _exhausted(self, batch: Batch, outcome: DeliveryOutcome) -> None:
    if outcome.permanent:
      self.stats.add("rejected", len(batch))
      _logger.warning(
        "logrelay collector rejected batch %s after %s attempts, dropping %s entries: %s",
        batch.id,
        batch.attempts + 1,
        len(batch),
        outcome.error,
      )
      return

    self.stats.add("failed", len(batch))
    self._offline.enqueue(batch)
    _logger.warning(
      "logrelay failed to send batch %s after %s attempts, queued offline: %s",
      batch.id,
      batch.attempts + 1,
      outcome.error,
    )

  def _replay(self, batch: Batch) -> DeliveryOutcome:
    outcome = self._send(batch)
    if outcome.ok:
      self.stats.add("replayed", len(batch))
    return outcome

  def _drain_offline(self) -> DrainResult:
    return self._offline.drain_on_reconnect(
      self._replay,
      replay_delay=self._replay_delay,
      should_continue=lambda: self._online and not self._closed,
    )
