"""Maintenance jobs and the runner that executes them."""

from .maintenance import MaintenanceJobs
from .runner import JobRunner

__all__ = ["JobRunner", "MaintenanceJobs"]
