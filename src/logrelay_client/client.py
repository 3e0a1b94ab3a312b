from __future__ import annotations

import atexit
import builtins
import json
import logging
import threading
import time
import traceback
from concurrent.futures import Executor, Future
from dataclasses import asdict
from typing import Any, Callable, Dict, Mapping, Optional

from .capture import ErrorCapture
from .config import ClientConfig
from .console import ConsoleInterceptor
from .delivery import BatchDispatcher, DeliveryStats
from .models import Batch, Level, LogEntry
from .offline import OfflineStore
from .queue import LogQueue
from .retry import Scheduler, timer_scheduler
from .session import SessionManager
from .storage import FileStorage, KeyValueStorage
from .transport import HttpTransport

_logger = logging.getLogger(__name__)


class LoggingClient:
  """
  Log batch delivery client.

  Owns its accumulator, transport, retry controller, offline store and
  session; nothing is global, so several clients can live side by side.
  Collaborators can be injected for tests.

  Usage::

    client = LoggingClient(ClientConfig.from_env()).init()
    client.log("info", "service started", port=8080)
    client.intercept_console()
    ...
    client.shutdown()
  """

  def __init__(
    self,
    config: Optional[ClientConfig] = None,
    *,
    storage: Optional[KeyValueStorage] = None,
    transport: Optional[HttpTransport] = None,
    executor: Optional[Executor] = None,
    scheduler: Scheduler = timer_scheduler,
    clock: Callable[[], float] = time.perf_counter,
    wall_clock: Callable[[], float] = time.time,
  ) -> None:
    self.config = config or ClientConfig.from_env()
    cfg = self.config

    self._storage: KeyValueStorage = storage if storage is not None else FileStorage(cfg.storage_dir)
    self._transport = transport or HttpTransport(endpoint=cfg.endpoint, timeout=cfg.request_timeout)

    self.session = SessionManager(self._storage, duration=cfg.session_duration, clock=wall_clock)
    self.offline = OfflineStore(self._storage, max_size=cfg.max_offline_queue_size)
    self.stats = DeliveryStats()
    self.dispatcher = BatchDispatcher(
      self._transport,
      self.offline,
      max_retries=cfg.max_retries,
      retry_base_delay=cfg.retry_base_delay,
      replay_delay=cfg.replay_delay,
      executor=executor,
      scheduler=scheduler,
      stats=self.stats,
    )
    self.queue = LogQueue(
      sender=self.dispatcher.submit,
      maxsize=cfg.max_queue_size,
      batch_size=cfg.batch_size,
      flush_interval=cfg.flush_interval,
      performance_threshold_ms=cfg.performance_threshold_ms,
      clock=clock,
    )
    self.console = ConsoleInterceptor(
      sink=self._emit,
      is_enabled=lambda: self.enabled,
      max_message_length=cfg.max_message_length,
      on_error=lambda exc: self.stats.record_error("console", exc),
    )
    self.errors = ErrorCapture(sink=self._emit, is_enabled=lambda: self.enabled)

    # Entries logged before init() buffer in the queue until it starts.
    self._enabled = cfg.enabled
    self._initialized = False
    self._lock = threading.Lock()

    self._min_severity = Level.parse(cfg.min_level).severity
    self._skip_patterns = [pattern.lower() for pattern in cfg.skip_patterns if pattern]
    self._filtered = 0

  @property
  def enabled(self) -> bool:
    return self._enabled and self.queue.enabled

  @property
  def initialized(self) -> bool:
    return self._initialized

  def init(self) -> "LoggingClient":
    with self._lock:
      if self._initialized or not self.config.enabled:
        return self
      self._initialized = True

    self.session.initialize()
    restored = self.offline.load()
    if restored:
      _logger.info("logrelay restored %s offline batch(es)", restored)

    self.queue.start()
    if self.config.capture_errors:
      self.errors.install()
    atexit.register(self._at_exit)

    config = asdict(self.config)
    config["endpoint"] = "[redacted]"
    self._emit(
      Level.INFO,
      "logrelay client initialized",
      {"source": "client", "config": config},
    )
    if restored:
      self.dispatcher.drain()
    return self

  def shutdown(self, timeout: float = 2.0) -> None:
    with self._lock:
      if not self._initialized:
        return
      self._initialized = False

    self.console.restore()
    self.errors.restore()
    self._enabled = False
    self.queue.stop(flush=True)
    self.dispatcher.shutdown(timeout=timeout)
    atexit.unregister(self._at_exit)
    self._transport.close()

  def __enter__(self) -> "LoggingClient":
    return self.init()

  def __exit__(self, exc_type, exc, tb) -> None:
    self.shutdown()

  def log(self, level: Any, message: Any, **metadata: Any) -> bool:
    """
    Record an application log call. Returns whether it was accepted.
    """
    try:
      meta = {"source": "manual"}
      meta.update(metadata)
      return self._emit(Level.parse(level), message, meta)
    except Exception as exc:
      self.stats.record_error("log", exc)
      return False

  def log_record(self, record: logging.LogRecord) -> bool:
    """
    Record a stdlib ``logging`` record, enriched with error context.
    """
    metadata: Dict[str, Any] = {
      "source": "logging",
      "module_name": record.name,
      "originalLevel": record.levelname,
    }
    if record.exc_info:
      exc_type, exc_value, exc_tb = record.exc_info
      if exc_type is not None:
        metadata["exception_type"] = exc_type.__name__
      if exc_tb is not None:
        metadata["stacktrace"] = "".join(traceback.format_exception(exc_type, exc_value, exc_tb))
    if getattr(record, "pathname", None):
      metadata["file_path"] = record.pathname
    if getattr(record, "lineno", None) is not None:
      metadata["line_no"] = record.lineno
    return self._emit(Level.from_logging(record.levelno), record.getMessage(), metadata)

  def add_entry(self, entry: LogEntry) -> bool:
    if not self.enabled:
      return False
    return self.queue.add(entry)

  def flush(self, force: bool = True) -> list[Batch]:
    return self.queue.flush(force=force)

  def enable(self) -> bool:
    """
    Resume capture. Refused while the per-call cost guard still trips.
    """
    if not self.config.enabled:
      return False
    if not self.queue.enable():
      return False
    self._enabled = True
    self._emit(Level.INFO, "logrelay client enabled", {"source": "client"})
    return True

  def disable(self) -> None:
    self._emit(Level.INFO, "logrelay client disabled", {"source": "client"})
    self._enabled = False

  def intercept_console(self, target: Any = builtins, methods: Optional[Mapping[str, Any]] = None) -> list[str]:
    return self.console.install(target, methods)

  def restore_console(self) -> None:
    self.console.restore()

  def notify_online(self) -> Optional[Future]:
    """Connectivity came back: resume live sends and replay the offline queue."""
    self.dispatcher.set_online(True)
    return self.dispatcher.drain()

  def notify_offline(self) -> None:
    self.dispatcher.set_online(False)

  def notify_hidden(self) -> list[Batch]:
    """The host is going to the background: push out everything buffered."""
    return self.flush(force=True)

  def get_stats(self) -> Dict[str, Any]:
    return {
      "enabled": self.enabled,
      "filtered": self._filtered,
      "session": self.session.metadata(),
      "queue": self.queue.stats(),
      "delivery": dict(
        self.stats.as_dict(),
        retries=self.dispatcher.retry.retries,
        pending_retries=self.dispatcher.retry.pending(),
        online=self.dispatcher.online,
      ),
      "offline": {
        "size": len(self.offline),
        "evicted": self.offline.evicted,
        "persistent": self.offline.persistent,
      },
      "console": {
        "installed": self.console.installed,
        "captured": self.console.captured,
        "errors": self.console.errors,
      },
    }

  def _emit(self, level: Level, message: Any, metadata: Dict[str, Any]) -> bool:
    if not self.enabled:
      return False
    if self._filtered_out(level, message, metadata):
      self._filtered += 1
      return False
    entry = LogEntry.create(
      level,
      message,
      service=self.config.service_name,
      source=self.config.component,
      metadata=metadata,
      session_id=self.session.session_id,
      max_message_length=self.config.max_message_length,
    )
    return self.queue.add(entry)

  def _filtered_out(self, level: Level, message: Any, metadata: Dict[str, Any]) -> bool:
    if level.severity < self._min_severity:
      return True
    if not self._skip_patterns:
      return False
    haystack = f"{message} {json.dumps(metadata, default=str)} {self.config.component}".lower()
    return any(pattern in haystack for pattern in self._skip_patterns)

  def _at_exit(self) -> None:
    try:
      self.shutdown(timeout=1.0)
    except Exception as exc:
      self.stats.record_error("shutdown", exc)
