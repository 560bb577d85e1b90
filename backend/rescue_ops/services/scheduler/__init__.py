"""Periodic expiry and SLA sweeps."""
from .expiry_sweep import ExpirySweeper

__all__ = ["ExpirySweeper"]
