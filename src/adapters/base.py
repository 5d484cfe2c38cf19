"""
Patch applier base — the contract between the pipeline and the diff tool.

The pipeline only talks to the binary-diff tool through this interface,
so tests can substitute a scripted applier for the real binary.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from src.core.models.receipt import ApplyRequest, Receipt
from src.core.reliability.cancellation import CancelToken


class PatchApplier(ABC):
    """Abstract base class for diff-apply strategies.

    Appliers run the external tool and return receipts. They NEVER
    raise for tool failures — a non-zero exit is captured in the
    Receipt. The only exception that may escape is
    ``OperationCancelled``.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """The applier identifier (e.g. 'butler', 'mock')."""

    @abstractmethod
    def is_available(self) -> bool:
        """Whether the underlying tool is present. Fast, never raises."""

    @abstractmethod
    def apply(self, request: ApplyRequest, cancel: CancelToken | None = None) -> Receipt:
        """Apply one patch file to ``request.target_dir``."""

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} name={self.name!r}>"
