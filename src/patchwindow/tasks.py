"""Upcoming patch events from the task scheduler.

Patch tasks live in one scheduler folder. Each task's description names the
patch cycle; the group map translates it into the machine group the task
patches.
"""

from __future__ import annotations

import json
import logging
import subprocess
from datetime import datetime, timedelta
from typing import Protocol

from pydantic import ValidationError

from .models import GroupMapSpec, ScheduledPatchEvent, ScheduledTaskRecord

logger = logging.getLogger(__name__)

POWERSHELL_EXECUTABLE = "powershell.exe"

# Emits a JSON array of {name, description, next_run_time} with UTC times
LIST_TASKS_SCRIPT = """
$ErrorActionPreference = 'Stop'
$tasks = @(Get-ScheduledTask -TaskPath '{path}' -ErrorAction SilentlyContinue | ForEach-Object {{
    $info = $_ | Get-ScheduledTaskInfo
    $next = $null
    if ($info.NextRunTime) {{
        $next = $info.NextRunTime.ToUniversalTime().ToString('yyyy-MM-ddTHH:mm:ssZ')
    }}
    [pscustomobject]@{{
        name = $_.TaskName
        description = $_.Description
        next_run_time = $next
    }}
}})
ConvertTo-Json -InputObject $tasks -Compress
"""


class SchedulerError(Exception):
    """Raised when the task scheduler cannot be queried."""

    pass


class TaskScheduler(Protocol):
    """Read-only view of the task scheduler."""

    def list_tasks(self, path: str) -> list[ScheduledTaskRecord]: ...


def parse_task_listing(output: str) -> list[ScheduledTaskRecord]:
    """Parse the scheduler's JSON listing.

    Accepts an array, a single object, or empty output.

    Raises:
        SchedulerError: If the output is not valid task JSON.
    """
    if not output.strip():
        return []

    try:
        data = json.loads(output)
    except json.JSONDecodeError as e:
        raise SchedulerError(f"Scheduler returned invalid JSON: {e}") from e

    if data is None:
        return []
    if isinstance(data, dict):
        data = [data]
    if not isinstance(data, list):
        raise SchedulerError(f"Unexpected scheduler output type: {type(data).__name__}")

    try:
        return [ScheduledTaskRecord.model_validate(item) for item in data]
    except ValidationError as e:
        raise SchedulerError(f"Scheduler returned an invalid task: {e}") from e


class PowerShellTaskScheduler:
    """Windows Task Scheduler queried through PowerShell."""

    def __init__(self, timeout_seconds: int, executable: str = POWERSHELL_EXECUTABLE) -> None:
        self._timeout = timeout_seconds
        self._executable = executable

    def list_tasks(self, path: str) -> list[ScheduledTaskRecord]:
        script = LIST_TASKS_SCRIPT.format(path=path.replace("'", "''"))
        cmd = [self._executable, "-NoProfile", "-NonInteractive", "-Command", script]

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self._timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise SchedulerError(f"Scheduler query timed out after {self._timeout}s") from e
        except OSError as e:
            raise SchedulerError(f"Cannot run {self._executable}: {e}") from e

        if result.returncode != 0:
            raise SchedulerError(
                f"Scheduler query failed with exit code {result.returncode}: "
                f"{result.stderr.strip()}"
            )

        return parse_task_listing(result.stdout)


class TaskSource:
    """Reads patch events falling inside the look-ahead horizon."""

    def __init__(self, scheduler: TaskScheduler, task_path: str, group_map: GroupMapSpec) -> None:
        self._scheduler = scheduler
        self._task_path = task_path
        self._group_map = group_map

    def get_upcoming_events(self, now: datetime, horizon: timedelta) -> list[ScheduledPatchEvent]:
        """Return events with ``now < run_time < now + horizon``.

        Raises:
            SchedulerError: If the scheduler cannot be queried.
        """
        limit = now + horizon
        events: list[ScheduledPatchEvent] = []

        for task in self._scheduler.list_tasks(self._task_path):
            if task.next_run_time is None:
                continue
            if not now < task.next_run_time < limit:
                continue

            description = task.description or ""
            group = self._group_map.group_for(description)
            if not group:
                logger.warning(
                    "No machine group mapped for task description",
                    extra={
                        "source": "GetUpcomingEvents",
                        "task": task.name,
                        "description": description,
                    },
                )

            events.append(
                ScheduledPatchEvent(
                    name=task.name,
                    description=description,
                    run_time=task.next_run_time,
                    group=group,
                )
            )

        events.sort(key=lambda e: e.run_time)
        logger.info(
            "Upcoming patch events",
            extra={
                "source": "GetUpcomingEvents",
                "count": len(events),
                "task_path": self._task_path,
                "horizon_end": limit.isoformat(),
            },
        )
        return events
