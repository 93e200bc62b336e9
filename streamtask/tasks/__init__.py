"""
Tasks - schedules, the job registry and the scheduler
"""

from streamtask.tasks.schedule import (
    Schedule,
    FixedInterval,
    FixedTime,
    CronSchedule,
    parse_cron,
    parse_schedule,
)
from streamtask.tasks.registry import JobRegistry, TaskDefinition, TaskState
from streamtask.tasks.scheduler import RunState, Scheduler, TaskRun

__all__ = [
    "Schedule",
    "FixedInterval",
    "FixedTime",
    "CronSchedule",
    "parse_cron",
    "parse_schedule",
    "JobRegistry",
    "TaskDefinition",
    "TaskState",
    "RunState",
    "Scheduler",
    "TaskRun",
]
