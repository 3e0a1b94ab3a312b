import json
import logging
import threading

from conftest import make_batch, retryable

from logrelay_client.offline import OfflineStore
from logrelay_client.storage import OFFLINE_QUEUE_KEY, FileStorage, MemoryStorage
from logrelay_client.transport import DeliveryOutcome, DeliveryStatus

OK = DeliveryOutcome(DeliveryStatus.SUCCESS, status_code=202)


def test_enqueue_persists_and_reloads(tmp_path):
  storage = FileStorage(tmp_path)
  store = OfflineStore(storage)
  batches = [make_batch("a"), make_batch("b", "c")]
  for batch in batches:
    store.enqueue(batch)

  # Same storage, new process.
  reloaded = OfflineStore(FileStorage(tmp_path))
  assert reloaded.load() == 2
  assert [b.id for b in reloaded.snapshot()] == [b.id for b in batches]
  assert [e.message for e in reloaded.snapshot()[1].entries] == ["b", "c"]


def test_cap_evicts_oldest_with_warning(caplog):
  store = OfflineStore(MemoryStorage(), max_size=2)
  batches = [make_batch(str(i)) for i in range(3)]

  with caplog.at_level(logging.WARNING, logger="logrelay_client.offline"):
    assert store.enqueue(batches[0]) is None
    assert store.enqueue(batches[1]) is None
    evicted = store.enqueue(batches[2])

  assert evicted.id == batches[0].id
  assert [b.id for b in store.snapshot()] == [batches[1].id, batches[2].id]
  assert store.evicted == 1
  assert "offline queue full" in caplog.text


def test_unreadable_persisted_queue_is_discarded():
  storage = MemoryStorage()
  storage.set(OFFLINE_QUEUE_KEY, "[{broken")
  store = OfflineStore(storage)
  assert store.load() == 0
  assert len(store) == 0


def test_drain_replays_in_enqueue_order_and_empties_queue():
  storage = MemoryStorage()
  store = OfflineStore(storage)
  batches = [make_batch(str(i)) for i in range(3)]
  for batch in batches:
    store.enqueue(batch)
  sent = []
  sleeps = []

  def send(batch):
    sent.append(batch.id)
    return OK

  result = store.drain_on_reconnect(send, replay_delay=0.1, sleep=sleeps.append)

  assert sent == [b.id for b in batches]
  assert sleeps == [0.1, 0.1]
  assert (result.replayed, result.failed, result.remaining) == (3, 0, 0)
  assert json.loads(storage.get(OFFLINE_QUEUE_KEY)) == []


def test_failed_replay_moves_batch_to_tail():
  store = OfflineStore(MemoryStorage())
  first, second = make_batch("1"), make_batch("2")
  store.enqueue(first)
  store.enqueue(second)
  outcomes = [retryable(), OK]

  result = store.drain_on_reconnect(lambda batch: outcomes.pop(0), replay_delay=0)

  assert (result.replayed, result.failed, result.remaining) == (1, 1, 1)
  assert [b.id for b in store.snapshot()] == [first.id]


def test_drain_stops_when_connectivity_drops():
  store = OfflineStore(MemoryStorage())
  for i in range(3):
    store.enqueue(make_batch(str(i)))
  sent = []
  online = [True]

  def send(batch):
    sent.append(batch)
    online[0] = False
    return OK

  result = store.drain_on_reconnect(send, replay_delay=0, should_continue=lambda: online[0])

  assert len(sent) == 1
  assert result.remaining == 2


def test_concurrent_drain_is_ignored():
  store = OfflineStore(MemoryStorage())
  store.enqueue(make_batch())
  entered = threading.Event()
  release = threading.Event()

  def slow_send(batch):
    entered.set()
    release.wait(2.0)
    return OK

  worker = threading.Thread(target=store.drain_on_reconnect, args=(slow_send,), kwargs={"replay_delay": 0})
  worker.start()
  try:
    assert entered.wait(2.0)
    second = store.drain_on_reconnect(lambda batch: OK, replay_delay=0)
    assert (second.replayed, second.failed, second.remaining) == (0, 0, 1)
  finally:
    release.set()
    worker.join(2.0)
  assert len(store) == 0


def test_clear_empties_store():
  store = OfflineStore(MemoryStorage())
  store.enqueue(make_batch())
  store.enqueue(make_batch())
  assert store.clear() == 2
  assert store.snapshot() == []
