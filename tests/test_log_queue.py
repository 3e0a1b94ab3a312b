import logging
import multiprocessing as mp
import os
import threading

import pytest

from conftest import FakeClock, make_entry

from logrelay_client.queue import PERFORMANCE_MIN_SAMPLES, PERFORMANCE_WINDOW_SECONDS, LogQueue


class SlowClock(FakeClock):
  """Every reading advances time, so each add() appears to cost ``step`` seconds."""

  def __init__(self, step: float) -> None:
    super().__init__()
    self.step = step

  def __call__(self) -> float:
    self.now += self.step
    return self.now


def test_batch_size_triggers_delivery_in_call_order():
  batches = []
  log_queue = LogQueue(sender=batches.append, batch_size=3, flush_interval=60)
  log_queue.start()
  try:
    entries = [make_entry(f"message {i}") for i in range(3)]
    for entry in entries:
      assert log_queue.add(entry) is True

    assert len(batches) == 1
    assert list(batches[0].entries) == entries
    assert len(log_queue) == 0
  finally:
    log_queue.stop(flush=False)


def test_open_batch_preserves_insertion_order_below_threshold():
  batches = []
  log_queue = LogQueue(sender=batches.append, batch_size=10, flush_interval=60)
  log_queue.start()
  try:
    entries = [make_entry(str(i)) for i in range(7)]
    for entry in entries:
      log_queue.add(entry)
    assert batches == []

    flushed = log_queue.flush(force=True)
    assert [list(b.entries) for b in flushed] == [entries]
    assert batches == flushed
  finally:
    log_queue.stop(flush=False)


def test_flush_without_force_keeps_partial_batch():
  batches = []
  log_queue = LogQueue(sender=batches.append, batch_size=4)
  for i in range(6):
    log_queue.add(make_entry(str(i)))

  assert len(log_queue.flush()) == 1
  assert len(log_queue) == 2
  assert log_queue.flush() == []
  assert len(log_queue.flush(force=True)[0]) == 2
  assert log_queue.flush(force=True) == []


def test_entries_buffer_before_start_and_cap_evicts_oldest():
  batches = []
  log_queue = LogQueue(sender=batches.append, maxsize=5, batch_size=2)
  entries = [make_entry(str(i)) for i in range(7)]
  for entry in entries:
    log_queue.add(entry)

  assert batches == []
  stats = log_queue.stats()
  assert stats["queued"] == 5
  assert stats["dropped"] == 2

  flushed = log_queue.flush(force=True)
  delivered = [e for b in flushed for e in b.entries]
  assert delivered == entries[2:]


def test_start_sends_full_batches_buffered_earlier():
  batches = []
  log_queue = LogQueue(sender=batches.append, batch_size=2, flush_interval=60)
  for i in range(5):
    log_queue.add(make_entry(str(i)))

  log_queue.start()
  try:
    assert [len(b) for b in batches] == [2, 2]
    assert len(log_queue) == 1
  finally:
    log_queue.stop(flush=False)


def test_periodic_timer_flushes_partial_batch():
  delivered = threading.Event()
  batches = []

  def sender(batch):
    batches.append(batch)
    delivered.set()

  log_queue = LogQueue(sender=sender, batch_size=100, flush_interval=0.05)
  log_queue.start()
  try:
    log_queue.add(make_entry("lonely"))
    assert delivered.wait(timeout=2.0)
    assert [e.message for e in batches[0].entries] == ["lonely"]
  finally:
    log_queue.stop(flush=False)


def test_stop_forces_final_flush():
  batches = []
  log_queue = LogQueue(sender=batches.append, batch_size=10, flush_interval=60)
  log_queue.start()
  log_queue.add(make_entry("last words"))

  log_queue.stop(flush=True)

  assert [e.message for b in batches for e in b.entries] == ["last words"]


def test_sender_errors_do_not_reach_producer(caplog):
  def sender(batch):
    raise RuntimeError("boom")

  log_queue = LogQueue(sender=sender, batch_size=1, flush_interval=60)
  log_queue.start()
  try:
    with caplog.at_level(logging.ERROR, logger="logrelay_client.queue"):
      assert log_queue.add(make_entry()) is True
    assert "sender failed" in caplog.text
  finally:
    log_queue.stop(flush=False)


def test_slow_add_disables_queue_with_single_warning(caplog):
  # Each add() measures two clock readings 5ms apart: far above 1ms.
  log_queue = LogQueue(sender=lambda b: None, batch_size=1000, performance_threshold_ms=1.0, clock=SlowClock(0.005))

  with caplog.at_level(logging.WARNING, logger="logrelay_client.queue"):
    for i in range(PERFORMANCE_MIN_SAMPLES + 3):
      log_queue.add(make_entry(str(i)))

  assert log_queue.performance_disabled is True
  assert log_queue.enabled is False
  assert log_queue.stats()["accepted"] == PERFORMANCE_MIN_SAMPLES
  assert log_queue.add(make_entry("rejected")) is False
  assert len([r for r in caplog.records if "performance threshold exceeded" in r.getMessage()]) == 1


def test_enable_refused_while_violation_holds_then_allowed_after_window():
  clock = SlowClock(0.005)
  log_queue = LogQueue(sender=lambda b: None, batch_size=1000, performance_threshold_ms=1.0, clock=clock)
  for i in range(PERFORMANCE_MIN_SAMPLES):
    log_queue.add(make_entry(str(i)))
  assert log_queue.performance_disabled

  assert log_queue.enable() is False

  clock.advance(PERFORMANCE_WINDOW_SECONDS + 1)
  assert log_queue.enable() is True
  assert log_queue.enabled is True


def test_fast_adds_keep_queue_enabled():
  log_queue = LogQueue(sender=lambda b: None, batch_size=1000, performance_threshold_ms=1.0, clock=SlowClock(0.0001))
  for i in range(50):
    log_queue.add(make_entry(str(i)))
  assert log_queue.enabled is True
  assert log_queue.stats()["avg_add_ms"] == pytest.approx(0.1)


def test_disable_is_a_plain_switch():
  log_queue = LogQueue(sender=lambda b: None)
  log_queue.disable()
  assert log_queue.add(make_entry()) is False
  assert log_queue.enable() is True
  assert log_queue.add(make_entry()) is True


@pytest.mark.skipif(not hasattr(os, "fork"), reason="requires os.fork")
def test_log_queue_flushes_from_child_process():
  """After fork, the child gets its own flush thread on the next add()."""
  results: mp.Queue = mp.Queue()

  def sender(batch):
    results.put([e.message for e in batch.entries])

  log_queue = LogQueue(sender=sender, batch_size=100, flush_interval=0.05)
  log_queue.start()

  pid = os.fork()
  if pid == 0:
    try:
      log_queue.add(make_entry("from-child"))
      # Give the child's flush thread time to run.
      threading.Event().wait(0.5)
    finally:
      os._exit(0)

  os.waitpid(pid, 0)
  log_queue.stop(flush=False)
  assert results.get(timeout=2.0) == ["from-child"]
