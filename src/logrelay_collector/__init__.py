"""
logrelay_collector

Small HTTP collector that receives log batches from logrelay clients and
keeps them in SQLite.
"""

__version__ = "0.1.0"
