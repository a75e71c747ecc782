"""Finished-task history, newest first, persisted to a JSON file."""

import json
import logging
import os
from typing import List, Optional

from pagegen.models import FINISHED_TASK_STATUSES, TaskProgress

logger = logging.getLogger(__name__)


class HistoryStore:
    def __init__(self, path: Optional[str] = None, max_records: int = 1000):
        self.path = path
        self.max_records = max_records
        self.records: List[TaskProgress] = []

    def load(self) -> int:
        """Load records from disk. A missing file means an empty history."""
        if not self.path or not os.path.exists(self.path):
            return 0
        try:
            with open(self.path, "r", encoding="utf-8") as handle:
                data = json.load(handle)
            records = [TaskProgress.from_dict(item) for item in data]
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.error("Failed to read history file %s: %s", self.path, exc)
            return 0

        self.records = records[: self.max_records]
        logger.info("Loaded %d history record(s) from %s", len(self.records), self.path)
        return len(self.records)

    def save_record(self, task: TaskProgress) -> bool:
        """Store a copy of a finished task; unfinished tasks are ignored."""
        if task.status not in FINISHED_TASK_STATUSES:
            return False
        self.records = [r for r in self.records if r.id != task.id]
        self.records.insert(0, TaskProgress.from_dict(task.to_dict()))
        del self.records[self.max_records :]
        self._persist()
        return True

    def all(self) -> List[TaskProgress]:
        return list(self.records)

    def recent(self, limit: int = 50) -> List[TaskProgress]:
        return self.records[:limit]

    def search(self, keyword: str) -> List[TaskProgress]:
        needle = keyword.lower()
        return [
            record
            for record in self.records
            if needle in (record.keyword or "").lower()
            or needle in (record.page_title or "").lower()
        ]

    def filter_by_status(self, status: str) -> List[TaskProgress]:
        return [record for record in self.records if record.status == status]

    def delete(self, task_id: str) -> bool:
        remaining = [r for r in self.records if r.id != task_id]
        if len(remaining) == len(self.records):
            return False
        self.records = remaining
        self._persist()
        return True

    def clear(self) -> int:
        count = len(self.records)
        self.records = []
        self._persist()
        return count

    def _persist(self) -> None:
        if not self.path:
            return
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp_path = f"{self.path}.tmp"
        try:
            with open(tmp_path, "w", encoding="utf-8") as handle:
                json.dump([r.to_dict() for r in self.records], handle, ensure_ascii=False)
            os.replace(tmp_path, self.path)
        except OSError as exc:
            logger.error("Failed to write history file %s: %s", self.path, exc)
