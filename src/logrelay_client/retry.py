from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, List, Protocol, Tuple

from .models import Batch
from .transport import DeliveryOutcome

_logger = logging.getLogger(__name__)


class Cancellable(Protocol):
  def cancel(self) -> None: ...


Scheduler = Callable[[float, Callable[[], None]], Cancellable]


def timer_scheduler(delay: float, callback: Callable[[], None]) -> Cancellable:
  timer = threading.Timer(delay, callback)
  timer.name = "logrelay-retry"
  timer.daemon = True
  timer.start()
  return timer


class RetryController:
  """
  Exponential backoff for failed batches.

  A batch that has made ``n`` attempts is retried after
  ``base_delay * 2 ** n`` seconds, at most ``max_retries`` times. Each batch
  has its own timer so schedules never affect one another. When the budget
  is spent, ``on_exhausted`` receives the batch and its last outcome.
  """

  def __init__(
    self,
    resubmit: Callable[[Batch], None],
    on_exhausted: Callable[[Batch, DeliveryOutcome], None],
    max_retries: int = 3,
    base_delay: float = 1.0,
    scheduler: Scheduler = timer_scheduler,
  ) -> None:
    self._resubmit = resubmit
    self._on_exhausted = on_exhausted
    self._max_retries = max_retries
    self._base_delay = base_delay
    self._scheduler = scheduler
    self._pending: Dict[str, Tuple[Batch, Cancellable]] = {}
    self._lock = threading.Lock()
    self._closed = False
    self.retries = 0

  @property
  def max_retries(self) -> int:
    return self._max_retries

  def delay_for(self, attempt: int) -> float:
    return self._base_delay * (2 ** attempt)

  def pending(self) -> int:
    with self._lock:
      return len(self._pending)

  def on_failure(self, batch: Batch, outcome: DeliveryOutcome) -> bool:
    """
    Schedule the next attempt for ``batch``.

    ``batch.attempts`` is the number of retries already made. Returns True
    when a retry was scheduled, False when the batch was handed to
    ``on_exhausted``.
    """
    if batch.attempts >= self._max_retries or self._closed:
      self._on_exhausted(batch, outcome)
      return False

    delay = self.delay_for(batch.attempts)
    retry = batch.next_attempt()

    def fire() -> None:
      with self._lock:
        entry = self._pending.pop(batch.id, None)
      if entry is None:
        # Cancelled in the meantime.
        return
      self._resubmit(retry)

    with self._lock:
      previous = self._pending.pop(batch.id, None)
      if previous is not None:
        previous[1].cancel()
      # Register before scheduling so a zero-delay timer finds its entry.
      self._pending[batch.id] = (retry, _Unscheduled())
      self.retries += 1

    _logger.debug(
      "logrelay retrying batch %s in %.2fs (retry %s/%s): %s",
      batch.id,
      delay,
      retry.attempts,
      self._max_retries,
      outcome.error,
    )
    handle = self._scheduler(delay, fire)
    with self._lock:
      current = self._pending.get(batch.id)
      if current is not None and current[0] is retry:
        self._pending[batch.id] = (retry, handle)
    return True

  def cancel(self, batch_id: str) -> bool:
    with self._lock:
      entry = self._pending.pop(batch_id, None)
    if entry is None:
      return False
    entry[1].cancel()
    return True

  def cancel_all(self) -> List[Batch]:
    """
    Cancel every scheduled retry and return the batches that were waiting.
    """
    with self._lock:
      self._closed = True
      entries = list(self._pending.values())
      self._pending.clear()
    for _, handle in entries:
      handle.cancel()
    return [batch for batch, _ in entries]


class _Unscheduled:
  def cancel(self) -> None:
    pass
