from __future__ import annotations

import argparse
import os
import sys
from typing import NoReturn
from urllib.parse import urlparse

import httpx
import uvicorn

from logrelay_client.config import ClientConfig
from logrelay_client.offline import OfflineStore
from logrelay_client.session import SessionManager
from logrelay_client.storage import FileStorage
from logrelay_client.transport import HttpTransport

COMMANDS = {"serve", "status", "queue", "replay", "clear-session"}


def main(argv: list[str] | None = None) -> NoReturn:
  argv = list(sys.argv[1:] if argv is None else argv)

  if not argv or argv[0] not in COMMANDS:
    print("Usage: python -m logrelay {serve|status|queue|replay|clear-session}", file=sys.stderr)
    print("  serve          - Run the collector", file=sys.stderr)
    print("  status         - Check collector status", file=sys.stderr)
    print("  queue          - Show batches waiting in the offline queue", file=sys.stderr)
    print("  replay         - Send the offline queue to the collector now", file=sys.stderr)
    print("  clear-session  - Forget the persisted client session", file=sys.stderr)
    sys.exit(1)

  if argv[0] == "serve":
    _run_serve(argv[1:])
  elif argv[0] == "status":
    _run_status()
  elif argv[0] == "queue":
    _run_queue(argv[1:])
  elif argv[0] == "replay":
    _run_replay(argv[1:])
  elif argv[0] == "clear-session":
    _run_clear_session(argv[1:])


def _run_serve(args: list[str]) -> None:
  parser = argparse.ArgumentParser(prog="logrelay serve", description="Run the log collector")
  parser.add_argument("--host", default=os.getenv("LOGRELAY_COLLECTOR_HOST", "localhost"))
  parser.add_argument("--port", type=int, default=int(os.getenv("LOGRELAY_COLLECTOR_PORT", "42003")))
  parsed = parser.parse_args(args)

  # status.get_status() reports what we actually bind to.
  os.environ["LOGRELAY_COLLECTOR_HOST"] = parsed.host
  os.environ["LOGRELAY_COLLECTOR_PORT"] = str(parsed.port)

  uvicorn.run("logrelay_collector.api:app", host=parsed.host, port=parsed.port)
  sys.exit(0)


def _collector_status_url() -> str:
  endpoint = os.getenv("LOGRELAY_ENDPOINT")
  if endpoint:
    parsed = urlparse(endpoint)
    return f"{parsed.scheme}://{parsed.netloc}/status"
  host = os.getenv("LOGRELAY_COLLECTOR_HOST", "localhost")
  port = int(os.getenv("LOGRELAY_COLLECTOR_PORT", "42003"))
  return f"http://{host}:{port}/status"


def _run_status() -> None:
  url = _collector_status_url()

  try:
    response = httpx.get(url, timeout=1.0)
    response.raise_for_status()
    data = response.json()
  except (httpx.HTTPError, ValueError):
    print(f"logrelay collector status: UNREACHABLE at {url}", file=sys.stderr)
    print("Hint: ensure the collector is running and listening on this host/port.", file=sys.stderr)
    sys.exit(2)

  print("logrelay collector status: HEALTHY")
  print(f"Service: {data.get('service_name')} v{data.get('version')}")
  print(f"Listening on: {data.get('host')}:{data.get('port')}")
  sys.exit(0)


def _storage_parser(prog: str, description: str) -> argparse.ArgumentParser:
  parser = argparse.ArgumentParser(prog=prog, description=description)
  parser.add_argument(
    "--storage-dir",
    default=None,
    help="Client state directory (default: LOGRELAY_STORAGE_DIR or _logrelay/state)",
  )
  return parser


def _load_offline(storage_dir: str | None) -> tuple[ClientConfig, OfflineStore]:
  config = ClientConfig.from_params_or_env(storage_dir=storage_dir)
  store = OfflineStore(FileStorage(config.storage_dir), max_size=config.max_offline_queue_size)
  store.load()
  return config, store


def _run_queue(args: list[str]) -> None:
  parser = _storage_parser("logrelay queue", "Show batches waiting in the offline queue")
  parsed = parser.parse_args(args)
  config, store = _load_offline(parsed.storage_dir)

  batches = store.snapshot()
  print(f"Offline queue ({config.storage_dir}): {len(batches)} batch(es)")
  for batch in batches:
    print(f"  {batch.id}  entries={len(batch)}  attempts={batch.attempts}  created_at={batch.created_at}")
  sys.exit(0)


def _run_replay(args: list[str]) -> None:
  parser = _storage_parser("logrelay replay", "Send the offline queue to the collector now")
  parser.add_argument("--endpoint", default=None, help="Collector batch endpoint")
  parsed = parser.parse_args(args)

  config, store = _load_offline(parsed.storage_dir)
  if not len(store):
    print("Offline queue is empty, nothing to replay.")
    sys.exit(0)

  transport = HttpTransport(
    endpoint=parsed.endpoint or config.endpoint,
    timeout=config.request_timeout,
  )
  try:
    result = store.drain_on_reconnect(transport.send, replay_delay=config.replay_delay)
  finally:
    transport.close()

  print(f"Replayed {result.replayed} batch(es), {result.failed} failed, {result.remaining} remaining.")
  sys.exit(0 if result.failed == 0 else 3)


def _run_clear_session(args: list[str]) -> None:
  parser = _storage_parser("logrelay clear-session", "Forget the persisted client session")
  parsed = parser.parse_args(args)
  config = ClientConfig.from_params_or_env(storage_dir=parsed.storage_dir)
  SessionManager(FileStorage(config.storage_dir)).clear()
  print(f"Cleared session in {config.storage_dir}")
  sys.exit(0)


if __name__ == "__main__":
  main()
