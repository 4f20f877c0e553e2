"""Ordered queue of FileTasks owned by the orchestrator."""
from __future__ import annotations

import itertools
from typing import Dict, Iterator, List, Optional

from .errors import InvalidTransitionError
from .models import FileStatus, FileTask, SourceFile


class FileQueue:
    """Insertion-ordered store of FileTask snapshots.

    Tasks are immutable; ``update_status`` swaps in a new snapshot. Progress
    may only grow while a task is processing, and a terminal task never
    changes again.
    """

    def __init__(self) -> None:
        self._tasks: Dict[str, FileTask] = {}
        self._ids = itertools.count(1)

    def __len__(self) -> int:
        return len(self._tasks)

    def __iter__(self) -> Iterator[FileTask]:
        return iter(list(self._tasks.values()))

    def enqueue(self, source: SourceFile, sheet_mapping_id: str) -> FileTask:
        task = FileTask(id=f"file-{next(self._ids)}", source=source, sheet_mapping_id=sheet_mapping_id)
        self._tasks[task.id] = task
        return task

    def get(self, task_id: str) -> FileTask:
        try:
            return self._tasks[task_id]
        except KeyError:
            raise KeyError(f"Unknown file task: {task_id}") from None

    def index_of(self, task_id: str) -> int:
        return list(self._tasks).index(task_id)

    def tasks(self) -> List[FileTask]:
        return list(self._tasks.values())

    def next_pending(self) -> Optional[FileTask]:
        for task in self._tasks.values():
            if task.status == FileStatus.PENDING:
                return task
        return None

    def processing(self) -> Optional[FileTask]:
        for task in self._tasks.values():
            if task.status == FileStatus.PROCESSING:
                return task
        return None

    def update_status(self, task_id: str, **patch) -> FileTask:
        current = self.get(task_id)
        if current.status.is_terminal:
            raise InvalidTransitionError(f"{current.file_name} is already {current.status.value}")

        status = patch.get("status", current.status)
        if status == FileStatus.PROCESSING and current.status != FileStatus.PROCESSING:
            other = self.processing()
            if other is not None:
                raise InvalidTransitionError(f"{other.file_name} is already processing")
        progress = patch.get("progress_percent")
        if progress is not None:
            progress = max(0, min(100, int(progress)))
            if current.status == FileStatus.PROCESSING and status == FileStatus.PROCESSING:
                progress = max(progress, current.progress_percent)
            patch["progress_percent"] = progress
        if status == FileStatus.ERROR:
            patch.setdefault("error_message", current.error_message or "Upload failed")
            patch["summary"] = None
        else:
            patch["error_message"] = None

        updated = current.with_changes(**patch)
        self._tasks[task_id] = updated
        return updated

    def assign_mapping(self, task_id: str, sheet_mapping_id: str) -> FileTask:
        current = self.get(task_id)
        if current.status != FileStatus.PENDING:
            raise InvalidTransitionError(f"Cannot change the sheet of {current.file_name} while {current.status.value}")
        updated = current.with_changes(sheet_mapping_id=sheet_mapping_id)
        self._tasks[task_id] = updated
        return updated

    def remove(self, task_id: str) -> FileTask:
        current = self.get(task_id)
        if current.status == FileStatus.PROCESSING:
            raise InvalidTransitionError(f"Cannot remove {current.file_name} while it is processing")
        return self._tasks.pop(task_id)
