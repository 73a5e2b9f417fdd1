"""Trust worker exports."""

from .periodic import PeriodicJob
from .runner import spawn_workers

__all__ = [
    "PeriodicJob",
    "spawn_workers",
]
