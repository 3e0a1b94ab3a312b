from __future__ import annotations

import sys
import threading
import traceback
from typing import Any, Callable, Dict, Optional

from .models import Level

ErrorSink = Callable[[Level, str, Dict[str, Any]], None]


class ErrorCapture:
  """
  Report uncaught exceptions from the main thread and worker threads.

  The previously installed hooks keep running first, so the usual
  traceback still reaches stderr.
  """

  def __init__(self, sink: ErrorSink, is_enabled: Callable[[], bool] = lambda: True) -> None:
    self._sink = sink
    self._is_enabled = is_enabled
    self._previous_excepthook: Optional[Callable[..., Any]] = None
    self._previous_threading_hook: Optional[Callable[..., Any]] = None

  @property
  def installed(self) -> bool:
    return self._previous_excepthook is not None

  def install(self) -> None:
    if self.installed:
      return
    self._previous_excepthook = sys.excepthook
    self._previous_threading_hook = threading.excepthook
    sys.excepthook = self._excepthook
    threading.excepthook = self._threading_excepthook

  def restore(self) -> None:
    if not self.installed:
      return
    if sys.excepthook == self._excepthook:
      sys.excepthook = self._previous_excepthook
    if threading.excepthook == self._threading_excepthook:
      threading.excepthook = self._previous_threading_hook
    self._previous_excepthook = None
    self._previous_threading_hook = None

  def _excepthook(self, exc_type, exc_value, exc_tb) -> None:
    if self._previous_excepthook is not None:
      self._previous_excepthook(exc_type, exc_value, exc_tb)
    self._report(exc_type, exc_value, exc_tb, source="global-error")

  def _threading_excepthook(self, args) -> None:
    if self._previous_threading_hook is not None:
      self._previous_threading_hook(args)
    thread_name = args.thread.name if args.thread is not None else None
    self._report(
      args.exc_type,
      args.exc_value,
      args.exc_traceback,
      source="thread-error",
      thread=thread_name,
    )

  def _report(self, exc_type, exc_value, exc_tb, *, source: str, thread: Optional[str] = None) -> None:
    if exc_type is None or issubclass(exc_type, (KeyboardInterrupt, SystemExit)):
      return
    try:
      if not self._is_enabled():
        return
      metadata: Dict[str, Any] = {
        "source": source,
        "exception_type": exc_type.__name__,
        "stacktrace": "".join(traceback.format_exception(exc_type, exc_value, exc_tb)),
      }
      if exc_tb is not None:
        last = traceback.extract_tb(exc_tb)[-1]
        metadata["file_path"] = last.filename
        metadata["line_no"] = last.lineno
      if thread is not None:
        metadata["thread"] = thread
      self._sink(Level.ERROR, f"Uncaught {exc_type.__name__}: {exc_value}", metadata)
    except Exception:
      # Reporting must never mask the original exception.
      pass
