"""Diff-apply tool adapters."""

from src.adapters.patching.butler import ButlerApplier, build_apply_command

__all__ = ["ButlerApplier", "build_apply_command"]
