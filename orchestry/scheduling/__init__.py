"""Task scheduling: readiness resolution and atomic claiming."""

from orchestry.scheduling.task_scheduler import TaskScheduler

__all__ = ["TaskScheduler"]
