"""In-memory registry of generation tasks."""

import asyncio
import logging
import time
import uuid
from typing import Any, Callable, Dict, Optional

from pagegen.history_store import HistoryStore
from pagegen.models import (
    FINISHED_TASK_STATUSES,
    TASK_COMPLETED,
    TASK_FAILED,
    TASK_PAUSED,
    TASK_QUEUED,
    TaskProgress,
)

logger = logging.getLogger(__name__)


class TaskNotFound(KeyError):
    pass


class TaskStore:
    """
    Tracks task progress and the pause state of running tasks.

    A paused task keeps the status it had before pausing in
    ``details["paused_from"]`` and blocks in ``wait_if_paused`` until resumed.
    """

    def __init__(
        self,
        history: Optional[HistoryStore] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.history = history
        self._clock = clock
        self.tasks: Dict[str, TaskProgress] = {}
        self._resume_events: Dict[str, asyncio.Event] = {}

    def create(self, message: str, keyword: Optional[str] = None) -> TaskProgress:
        now = self._clock()
        task = TaskProgress(
            id=str(uuid.uuid4()),
            status=TASK_QUEUED,
            message=message,
            created_at=now,
            updated_at=now,
            keyword=keyword,
        )
        self.tasks[task.id] = task
        return task

    def get(self, task_id: str) -> Optional[TaskProgress]:
        return self.tasks.get(task_id)

    def update(self, task_id: str, status: str, message: str, **extras: Any) -> TaskProgress:
        task = self.tasks.get(task_id)
        if task is None:
            raise TaskNotFound(task_id)

        details = extras.pop("details", None)
        for name, value in extras.items():
            setattr(task, name, value)
        if details:
            task.details.update(details)

        # A paused task keeps showing as paused; the status is applied on resume.
        if task.status == TASK_PAUSED and status not in FINISHED_TASK_STATUSES:
            task.details["paused_from"] = status
        else:
            task.status = status
        task.message = message
        task.updated_at = self._clock()
        return task

    def set_error(self, task_id: str, error: str) -> None:
        task = self.tasks.get(task_id)
        if task is None:
            return
        self._release(task)
        self.update(task_id, TASK_FAILED, error, error=error)
        self._archive(task)

    def set_completed(self, task_id: str, message: str, page_url: Optional[str] = None) -> None:
        task = self.tasks.get(task_id)
        if task is None:
            return
        self._release(task)
        self.update(task_id, TASK_COMPLETED, message, page_url=page_url)
        self._archive(task)

    def pause(self, task_id: str) -> bool:
        task = self.tasks.get(task_id)
        if task is None or task.status in FINISHED_TASK_STATUSES or task.status == TASK_PAUSED:
            return False
        task.details["paused_from"] = task.status
        task.status = TASK_PAUSED
        task.message = "Task paused"
        task.updated_at = self._clock()
        self._resume_events[task_id] = asyncio.Event()
        logger.info("Task %s paused", task_id)
        return True

    def resume(self, task_id: str) -> bool:
        task = self.tasks.get(task_id)
        if task is None or task.status != TASK_PAUSED:
            return False
        task.status = task.details.pop("paused_from", TASK_QUEUED)
        task.message = "Task resumed"
        task.updated_at = self._clock()
        event = self._resume_events.pop(task_id, None)
        if event is not None:
            event.set()
        logger.info("Task %s resumed", task_id)
        return True

    async def wait_if_paused(self, task_id: str) -> None:
        event = self._resume_events.get(task_id)
        if event is not None:
            await event.wait()

    def _release(self, task: TaskProgress) -> None:
        task.details.pop("paused_from", None)
        event = self._resume_events.pop(task.id, None)
        if event is not None:
            event.set()

    def _archive(self, task: TaskProgress) -> None:
        if self.history is not None:
            self.history.save_record(task)
