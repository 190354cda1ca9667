"""Background jobs for the study scheduler."""

from .sweep import (
    SWEEP_INTERVAL_MINUTES,
    SweepResult,
    SweepService,
    run_sweep_once,
)

__all__ = [
    "SWEEP_INTERVAL_MINUTES",
    "SweepResult",
    "SweepService",
    "run_sweep_once",
]
