# batchtrace/__init__.py
"""Batch provenance on an EVM ledger: custody hops, history and declared quantities."""

__version__ = "0.1.0"
