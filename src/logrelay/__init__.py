"""logrelay package alias.

Lets users run `python -m logrelay` instead of `python -m logrelay_collector`
and import the client API from one short name.
"""

from logrelay_client import *  # noqa: F403, F401
