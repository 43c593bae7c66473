"""
Automation Module
"""
from .scheduler import ScheduledJob, SyncScheduler, build_jobs

__all__ = ["ScheduledJob", "SyncScheduler", "build_jobs"]
