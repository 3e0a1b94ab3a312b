"""Entry point for python -m logrelay command.

This module provides the CLI entry point for `python -m logrelay`,
which is an alias to `python -m logrelay_collector`.
"""

from logrelay_collector.__main__ import main

if __name__ == "__main__":
    main()
