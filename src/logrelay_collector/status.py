from __future__ import annotations

import os
from dataclasses import asdict, dataclass

from . import __version__


@dataclass
class CollectorStatus:
  status: str
  service_name: str
  version: str
  host: str
  port: int


def get_status() -> dict:
  """
  Return a simple status payload for the collector.
  """
  host = os.getenv("LOGRELAY_COLLECTOR_HOST", "localhost")
  port = int(os.getenv("LOGRELAY_COLLECTOR_PORT", "42003"))

  payload = CollectorStatus(
    status="healthy",
    service_name="logrelay_collector",
    version=__version__,
    host=host,
    port=port,
  )
  return asdict(payload)
