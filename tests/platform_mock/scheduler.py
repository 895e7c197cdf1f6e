"""Mock task scheduler."""

from __future__ import annotations

from datetime import datetime

from patchwindow.models import ScheduledTaskRecord
from patchwindow.tasks import SchedulerError


class MockTaskScheduler:
    """Returns a fixed snapshot of tasks for every path queried."""

    def __init__(self) -> None:
        self._tasks: list[ScheduledTaskRecord] = []
        self._should_fail = False
        self.queried_paths: list[str] = []

    def add_task(self, name: str, description: str | None, next_run_time: datetime | None) -> None:
        self._tasks.append(
            ScheduledTaskRecord(name=name, description=description, next_run_time=next_run_time)
        )

    def set_failure(self, should_fail: bool) -> None:
        self._should_fail = should_fail

    def list_tasks(self, path: str) -> list[ScheduledTaskRecord]:
        self.queried_paths.append(path)
        if self._should_fail:
            raise SchedulerError("Scheduler service unavailable")
        return list(self._tasks)
