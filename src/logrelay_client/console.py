from __future__ import annotations

import builtins
import functools
import json
import sys
import threading
import traceback
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .models import DEFAULT_MAX_MESSAGE_LENGTH, Level, truncate

# Method name -> level, for console-like objects.
CONSOLE_METHODS: Dict[str, Level] = {
  "print": Level.INFO,
  "log": Level.INFO,
  "info": Level.INFO,
  "warn": Level.WARN,
  "warning": Level.WARN,
  "error": Level.ERROR,
  "exception": Level.ERROR,
  "critical": Level.FATAL,
  "debug": Level.DEBUG,
  "trace": Level.TRACE,
}

ConsoleSink = Callable[[Level, str, Dict[str, Any]], None]

_MISSING = object()


def format_argument(arg: Any) -> str:
  if isinstance(arg, str):
    return arg
  if isinstance(arg, BaseException):
    text = f"{type(arg).__name__}: {arg}"
    if arg.__traceback__ is not None:
      text += "\n" + "".join(traceback.format_tb(arg.__traceback__))
    return text
  if isinstance(arg, (dict, list, tuple)):
    try:
      return json.dumps(arg, indent=2)
    except (TypeError, ValueError):
      return str(arg)
  return str(arg)


def format_message(args: Tuple[Any, ...], sep: Any = None) -> str:
  separator = sep if isinstance(sep, str) else " "
  return separator.join(format_argument(arg) for arg in args)


class ConsoleInterceptor:
  """
  Transparent wrapper around console-like callables.

  The original callable always runs first with the caller's arguments,
  untouched, and its return value is passed back. Capturing happens
  afterwards and never raises: internal failures are counted in
  ``errors`` and reported to ``on_error``.
  """

  def __init__(
    self,
    sink: ConsoleSink,
    is_enabled: Callable[[], bool] = lambda: True,
    max_message_length: int = DEFAULT_MAX_MESSAGE_LENGTH,
    on_error: Optional[Callable[[BaseException], None]] = None,
  ) -> None:
    self._sink = sink
    self._is_enabled = is_enabled
    self._max_message_length = max_message_length
    self._on_error = on_error
    # (target, name, original attribute or _MISSING when inherited)
    self._installed: List[Tuple[Any, str, Any]] = []
    self._local = threading.local()
    self.captured = 0
    self.errors = 0

  @property
  def installed(self) -> bool:
    return bool(self._installed)

  def install(self, target: Any = builtins, methods: Optional[Mapping[str, Any]] = None) -> List[str]:
    """
    Wrap ``methods`` on ``target`` (default: ``builtins.print``).

    ``methods`` maps attribute names to levels; when omitted, every known
    console method present on ``target`` is wrapped, or just ``print`` for
    the builtins module. Returns the wrapped names.
    """
    if methods is None:
      if target is builtins:
        methods = {"print": Level.INFO}
      else:
        methods = {name: level for name, level in CONSOLE_METHODS.items() if name != "print"}

    wrapped: List[str] = []
    for name, level in methods.items():
      current = getattr(target, name, None)
      if not callable(current):
        continue
      if any(t is target and n == name for t, n, _ in self._installed):
        continue
      own = vars(target).get(name, _MISSING) if hasattr(target, "__dict__") else _MISSING
      self._installed.append((target, name, own))
      setattr(target, name, self._wrap(current, name, Level.parse(level)))
      wrapped.append(name)
    return wrapped

  def restore(self) -> None:
    """Put every wrapped attribute back exactly as it was."""
    while self._installed:
      target, name, original = self._installed.pop()
      if original is _MISSING:
        try:
          delattr(target, name)
        except AttributeError:
          pass
      else:
        setattr(target, name, original)

  def _wrap(self, original: Callable[..., Any], method: str, level: Level) -> Callable[..., Any]:
    interceptor = self

    @functools.wraps(original)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
      result = original(*args, **kwargs)
      interceptor._capture(method, level, args, kwargs)
      return result

    return wrapper

  def _capture(self, method: str, level: Level, args: Tuple[Any, ...], kwargs: Dict[str, Any]) -> None:
    if getattr(self._local, "active", False):
      return
    self._local.active = True
    try:
      if not self._is_enabled():
        return
      message = truncate(format_message(args, kwargs.get("sep")), self._max_message_length)
      metadata: Dict[str, Any] = {
        "source": "console",
        "method": method,
        "argCount": len(args),
      }
      # Frame 0 is _capture, 1 is the wrapper, 2 is the caller.
      caller = sys._getframe(2)
      metadata["file_path"] = caller.f_code.co_filename
      metadata["line_no"] = caller.f_lineno
      self._sink(level, message, metadata)
      self.captured += 1
    except Exception as exc:
      self.errors += 1
      if self._on_error is not None:
        try:
          self._on_error(exc)
        except Exception:
          pass
    finally:
      self._local.active = False
