"""Adapters — bindings for the network, child processes and the diff tool.

Public re-exports for convenient access.
"""

from src.adapters.base import PatchApplier
from src.adapters.mock import MockApplier, Outcome
from src.adapters.patching.butler import ButlerApplier

__all__ = [
    "ButlerApplier",
    "MockApplier",
    "Outcome",
    "PatchApplier",
]
