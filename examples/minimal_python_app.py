import logging
import os

from logrelay_client import setup_logging


def main() -> None:
  # Minimal configuration via environment variables
  os.environ.setdefault("LOGRELAY_SERVICE_NAME", "example-app")

  logger = logging.getLogger("example_app")
  logger.setLevel(logging.INFO)
  logging.basicConfig(level=logging.INFO)

  client = setup_logging(logger)
  if client is not None:
    client.intercept_console()

  print("Example print() output, shipped as an info entry")
  logger.info("Example INFO log from minimal app")
  try:
    1 / 0
  except ZeroDivisionError:
    logger.exception("Example ERROR log with exception")

  # Flush the open batch and restore print() before exit
  if client is not None:
    client.shutdown()


if __name__ == "__main__":
  main()
