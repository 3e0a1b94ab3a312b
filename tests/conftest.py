from concurrent.futures import Executor, Future
from typing import Callable, List, Optional, Tuple

import pytest

from logrelay_client.models import Batch, LogEntry
from logrelay_client.transport import DeliveryOutcome, DeliveryStatus


class InlineExecutor(Executor):
  """Runs submitted work immediately on the calling thread."""

  def submit(self, fn, *args, **kwargs):
    future: Future = Future()
    try:
      future.set_result(fn(*args, **kwargs))
    except BaseException as exc:  # pragma: no cover - surfaced through the future
      future.set_exception(exc)
    return future


class DeferredExecutor(Executor):
  """Queues submitted work until the test runs it."""

  def __init__(self) -> None:
    self.pending: List[Tuple[Future, Callable, tuple]] = []

  def submit(self, fn, *args, **kwargs):
    future: Future = Future()
    self.pending.append((future, fn, args))
    return future

  def run_all(self) -> int:
    count = 0
    while self.pending:
      future, fn, args = self.pending.pop(0)
      if not future.set_running_or_notify_cancel():
        continue
      try:
        future.set_result(fn(*args))
      except BaseException as exc:  # pragma: no cover - surfaced through the future
        future.set_exception(exc)
      count += 1
    return count


class _Handle:
  def __init__(self) -> None:
    self.cancelled = False

  def cancel(self) -> None:
    self.cancelled = True


class ManualScheduler:
  """Records scheduled callbacks; tests decide when they fire."""

  def __init__(self) -> None:
    self.scheduled: List[Tuple[float, Callable[[], None], _Handle]] = []
    self.delays: List[float] = []

  def __call__(self, delay: float, callback: Callable[[], None]) -> _Handle:
    handle = _Handle()
    self.scheduled.append((delay, callback, handle))
    self.delays.append(delay)
    return handle

  def run_next(self) -> bool:
    while self.scheduled:
      _, callback, handle = self.scheduled.pop(0)
      if not handle.cancelled:
        callback()
        return True
    return False

  def run_all(self) -> int:
    count = 0
    while self.run_next():
      count += 1
    return count


class FakeTransport:
  """Transport double: replays scripted outcomes, then succeeds."""

  def __init__(self, outcomes: Optional[List[DeliveryOutcome]] = None) -> None:
    self.outcomes = list(outcomes or [])
    self.sent: List[Batch] = []
    self.closed = False

  def send(self, batch: Batch) -> DeliveryOutcome:
    self.sent.append(batch)
    if self.outcomes:
      return self.outcomes.pop(0)
    return DeliveryOutcome(DeliveryStatus.SUCCESS, status_code=202)

  def close(self) -> None:
    self.closed = True


class FakeClock:
  def __init__(self, start: float = 1000.0) -> None:
    self.now = start

  def __call__(self) -> float:
    return self.now

  def advance(self, seconds: float) -> None:
    self.now += seconds


def retryable(code: int = 503) -> DeliveryOutcome:
  return DeliveryOutcome(DeliveryStatus.RETRYABLE, status_code=code, error=f"HTTP {code}")


def rejected(code: int = 413) -> DeliveryOutcome:
  return DeliveryOutcome(DeliveryStatus.REJECTED, status_code=code, error=f"HTTP {code}")


def make_entry(message: str = "hello", level: str = "info") -> LogEntry:
  return LogEntry.create(level, message, service="test-svc", source="tests")


def make_batch(*messages: str) -> Batch:
  return Batch.create(make_entry(m) for m in (messages or ("hello",)))


@pytest.fixture
def inline_executor() -> InlineExecutor:
  return InlineExecutor()


@pytest.fixture
def scheduler() -> ManualScheduler:
  return ManualScheduler()
