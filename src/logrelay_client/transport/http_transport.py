from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

import httpx

from ..models import Batch

_logger = logging.getLogger("logrelay_client.transport")

# Client errors that still indicate a transient condition on the collector side.
_TRANSIENT_CLIENT_ERRORS = {408, 425, 429}


class DeliveryStatus(str, Enum):
  SUCCESS = "success"
  RETRYABLE = "retryable"
  REJECTED = "rejected"


@dataclass(frozen=True)
class DeliveryOutcome:
  status: DeliveryStatus
  status_code: Optional[int] = None
  error: Optional[str] = None

  @property
  def ok(self) -> bool:
    return self.status is DeliveryStatus.SUCCESS

  @property
  def permanent(self) -> bool:
    return self.status is DeliveryStatus.REJECTED


def classify_status(status_code: int) -> DeliveryStatus:
  if 200 <= status_code < 300:
    return DeliveryStatus.SUCCESS
  if status_code >= 500 or status_code in _TRANSIENT_CLIENT_ERRORS:
    return DeliveryStatus.RETRYABLE
  return DeliveryStatus.REJECTED


@dataclass
class HttpTransport:
  """
  HTTP transport that posts one batch per request to the collector.

  Every request is bounded by ``timeout``. Failures are logged at WARNING
  level and reported through the returned :class:`DeliveryOutcome`; they
  never raise back to the caller.
  """

  endpoint: str
  timeout: float = 10.0
  source: str = "python"
  client: Optional[httpx.Client] = None
  _owns_client: bool = field(default=False, init=False, repr=False)

  def __post_init__(self) -> None:
    if self.client is None:
      self.client = httpx.Client(timeout=self.timeout)
      self._owns_client = True

  def send(self, batch: Batch) -> DeliveryOutcome:
    if not batch.entries:
      return DeliveryOutcome(DeliveryStatus.SUCCESS)

    try:
      data = json.dumps(batch.to_payload(self.source)).encode("utf-8")
    except (TypeError, ValueError) as exc:
      _logger.warning("logrelay could not serialize batch %s: %s", batch.id, exc)
      return DeliveryOutcome(DeliveryStatus.REJECTED, error=f"serialization: {exc}")

    try:
      response = self.client.post(
        self.endpoint,
        content=data,
        headers={
          "Content-Type": "application/json",
          "X-Logrelay-Batch-Id": batch.id,
        },
        timeout=self.timeout,
      )
    except httpx.TimeoutException as exc:
      _logger.warning(
        "logrelay HTTP transport timed out after %.1fs (batch %s, attempt %s): %s",
        self.timeout,
        batch.id,
        batch.attempts + 1,
        exc,
      )
      return DeliveryOutcome(DeliveryStatus.RETRYABLE, error=f"timeout: {exc}")
    except (httpx.HTTPError, OSError, RuntimeError) as exc:
      # RuntimeError: the owned client was already closed.
      _logger.warning(
        "logrelay HTTP transport failed to reach collector (batch %s, attempt %s): %s",
        batch.id,
        batch.attempts + 1,
        exc,
      )
      return DeliveryOutcome(DeliveryStatus.RETRYABLE, error=f"{type(exc).__name__}: {exc}")

    status = classify_status(response.status_code)
    if status is DeliveryStatus.SUCCESS:
      return DeliveryOutcome(status, status_code=response.status_code)

    _logger.warning(
      "logrelay collector answered HTTP %s for batch %s (attempt %s)",
      response.status_code,
      batch.id,
      batch.attempts + 1,
    )
    return DeliveryOutcome(
      status,
      status_code=response.status_code,
      error=f"HTTP {response.status_code}: {response.reason_phrase}",
    )

  def close(self) -> None:
    if self._owns_client and self.client is not None:
      self.client.close()
