"""
logrelay_client

Log batch delivery client: captures console output and application log
calls, groups them into batches and ships them to a collector with retry,
backoff and an offline queue that survives restarts.
"""

from .client import LoggingClient
from .config import ClientConfig
from .logging_setup import LogRelayHandler, setup_logging
from .models import Batch, Level, LogEntry
from .storage import FileStorage, MemoryStorage

__all__ = [
  "Batch",
  "ClientConfig",
  "FileStorage",
  "Level",
  "LogEntry",
  "LogRelayHandler",
  "LoggingClient",
  "MemoryStorage",
  "setup_logging",
]
