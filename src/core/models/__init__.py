"""
Domain models — Pydantic types for the deployment engine.

All models are re-exported here for convenient access:

    from src.core.models import InstallRequest, VersionPolicy, PatchStep
"""

from src.core.models.progress import ProgressEvent, Stage
from src.core.models.receipt import ApplyRequest, Receipt
from src.core.models.release import (
    NOT_INSTALLED,
    Asset,
    InstallRequest,
    PatchStep,
    PatchStepsResponse,
    PolicyKind,
    ResolvedVersion,
    RuntimeManifest,
    VersionPolicy,
)

__all__ = [
    # progress.py
    "ProgressEvent",
    "Stage",
    # receipt.py
    "ApplyRequest",
    "Receipt",
    # release.py
    "NOT_INSTALLED",
    "Asset",
    "InstallRequest",
    "PatchStep",
    "PatchStepsResponse",
    "PolicyKind",
    "ResolvedVersion",
    "RuntimeManifest",
    "VersionPolicy",
]
