from __future__ import annotations

import logging
from logging import Handler, LogRecord
from typing import Any, Optional

from .client import LoggingClient
from .config import ClientConfig

# The client's own diagnostics must not loop back into the queue.
_INTERNAL_LOGGER_PREFIX = "logrelay_client"


class LogRelayHandler(Handler):
  """
  Logging handler that turns records into log entries for a client.
  """

  def __init__(self, client: LoggingClient) -> None:
    super().__init__()
    self._client = client

  @property
  def client(self) -> LoggingClient:
    return self._client

  def emit(self, record: LogRecord) -> None:
    if record.name == _INTERNAL_LOGGER_PREFIX or record.name.startswith(_INTERNAL_LOGGER_PREFIX + "."):
      return
    try:
      self._client.log_record(record)
    except Exception:
      # Never break application logging.
      self.handleError(record)


def setup_logging(
  logger: Optional[logging.Logger] = None,
  *,
  client: Optional[LoggingClient] = None,
  **config: Any,
) -> Optional[LoggingClient]:
  """
  Attach a log relay handler to the standard logging module.

  This does not replace existing handlers; it adds one more handler that
  ships records to the collector through the client's batch queue. A client
  is created and initialized from ``config`` (and the environment) unless
  one is passed in. Returns the client, or None when capture is disabled.
  """
  target_logger = logger or logging.getLogger()

  # Avoid attaching duplicate client handlers to the same logger.
  for existing in target_logger.handlers:
    if isinstance(existing, LogRelayHandler):
      return existing.client

  if client is None:
    client_config = ClientConfig.from_params_or_env(**config)
    if not client_config.enabled:
      # Capture is disabled; preserve existing logging behavior only.
      return None
    client = LoggingClient(client_config)
  client.init()

  target_logger.addHandler(LogRelayHandler(client))
  return client
