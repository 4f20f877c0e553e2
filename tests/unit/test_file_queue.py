"""FileQueue transition rules."""
import pytest

from sheetload.errors import InvalidTransitionError
from sheetload.file_queue import FileQueue
from sheetload.models import FileStatus, FileSummary, SourceFile


def _queue(n=2):
    queue = FileQueue()
    tasks = [queue.enqueue(SourceFile(f"f{i}.xlsx", b""), "sheet-sales") for i in range(n)]
    return queue, tasks


def test_enqueue_keeps_order_and_pending_state():
    queue, tasks = _queue(3)

    assert [t.file_name for t in queue.tasks()] == ["f0.xlsx", "f1.xlsx", "f2.xlsx"]
    assert len({t.id for t in tasks}) == 3
    assert queue.next_pending().id == tasks[0].id
    assert queue.index_of(tasks[2].id) == 2


def test_only_one_task_processing():
    queue, tasks = _queue()
    queue.update_status(tasks[0].id, status=FileStatus.PROCESSING)

    with pytest.raises(InvalidTransitionError):
        queue.update_status(tasks[1].id, status=FileStatus.PROCESSING)
    assert queue.processing().id == tasks[0].id


def test_progress_never_goes_back_while_processing():
    queue, tasks = _queue(1)
    queue.update_status(tasks[0].id, status=FileStatus.PROCESSING, progress_percent=50)

    task = queue.update_status(tasks[0].id, progress_percent=30)

    assert task.progress_percent == 50
    assert queue.update_status(tasks[0].id, progress_percent=150).progress_percent == 100


def test_error_message_only_on_error():
    queue, tasks = _queue()
    queue.update_status(tasks[0].id, status=FileStatus.PROCESSING)
    failed = queue.update_status(tasks[0].id, status=FileStatus.ERROR, error_message="Skip File")
    queue.update_status(tasks[1].id, status=FileStatus.PROCESSING)
    done = queue.update_status(tasks[1].id, status=FileStatus.COMPLETED, summary=FileSummary(record_count=3))

    assert failed.error_message == "Skip File"
    assert failed.summary is None
    assert done.error_message is None
    assert done.summary.record_count == 3


def test_terminal_tasks_are_frozen():
    queue, tasks = _queue(1)
    queue.update_status(tasks[0].id, status=FileStatus.PROCESSING)
    queue.update_status(tasks[0].id, status=FileStatus.COMPLETED)

    with pytest.raises(InvalidTransitionError):
        queue.update_status(tasks[0].id, status=FileStatus.PROCESSING)


def test_assign_mapping_only_while_pending():
    queue, tasks = _queue(1)
    assert queue.assign_mapping(tasks[0].id, "sheet-returns").sheet_mapping_id == "sheet-returns"

    queue.update_status(tasks[0].id, status=FileStatus.PROCESSING)
    with pytest.raises(InvalidTransitionError):
        queue.assign_mapping(tasks[0].id, "sheet-sales")


def test_remove_rules():
    queue, tasks = _queue(3)
    queue.update_status(tasks[1].id, status=FileStatus.PROCESSING)

    queue.remove(tasks[0].id)
    with pytest.raises(InvalidTransitionError):
        queue.remove(tasks[1].id)
    queue.update_status(tasks[1].id, status=FileStatus.ERROR, error_message="boom")
    queue.remove(tasks[1].id)

    assert [t.id for t in queue] == [tasks[2].id]
    with pytest.raises(KeyError):
        queue.get(tasks[0].id)
