from __future__ import annotations

import logging
import os
import time
from typing import Dict, List, Optional

from fastapi import FastAPI, Query, status
from fastapi.middleware.cors import CORSMiddleware

from . import __version__, storage
from . import status as status_mod
from .models import CollectedEntry, EntryBatch

logger = logging.getLogger(__name__)

app = FastAPI(title="logrelay collector", version=__version__)

# CORS configuration for browser clients
# Allow all origins by default, configurable via LOGRELAY_CORS_ORIGINS env var
CORS_ORIGINS = os.environ.get("LOGRELAY_CORS_ORIGINS", "*")
if CORS_ORIGINS == "*":
  origins = ["*"]
else:
  origins = [o.strip() for o in CORS_ORIGINS.split(",")]

app.add_middleware(
  CORSMiddleware,
  allow_origins=origins,
  allow_credentials=True,
  allow_methods=["*"],
  allow_headers=["*"],
)


@app.get("/status")
async def status_endpoint() -> Dict[str, object]:
  """
  Lightweight status endpoint for the collector.
  """
  return status_mod.get_status()


@app.post("/api/logs/batch", status_code=status.HTTP_202_ACCEPTED)
async def ingest_batch(batch: EntryBatch) -> Dict[str, int]:
  """
  Ingestion endpoint for batched log entries.

  Validates the payload shape and delegates persistence to the storage
  layer. Entries already stored (client replays) are reported as duplicates.
  """
  now_ms = int(time.time() * 1000)

  # Check for suspicious timestamps
  for entry in batch.entries:
    if entry.timestamp > now_ms + 300_000:  # More than 5 minutes in future
      logger.warning(f"Entry {entry.id} timestamp is {(entry.timestamp - now_ms) / 1000:.1f}s in the future")

  backend = storage.get_storage()
  accepted, duplicates = backend.write_batch(batch)
  if duplicates:
    logger.info(f"Ignored {duplicates} duplicate entries from {batch.source}")
  return {"accepted": accepted, "duplicates": duplicates}


@app.get("/api/logs")
async def recent_logs(
  level: Optional[str] = Query(None, description="Exact wire level, e.g. 'error'"),
  service: Optional[str] = Query(None),
  search: Optional[str] = Query(None, description="Substring match on the message"),
  limit: int = Query(100, ge=1, le=1000),
) -> Dict[str, List[CollectedEntry]]:
  backend = storage.get_storage()
  entries = backend.query_recent(limit=limit, level=level, service=service, search=search)
  return {"entries": entries}
