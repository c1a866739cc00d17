import json

import pytest

from p2pfs.retry import PendingTask, RetryQueue, RetryQueueError


def test_task_round_trip():
    task = PendingTask(type="TRANSFER", file_path="shared/a.txt", target="10.0.0.2:8001", retries=3)
    assert PendingTask.from_dict(task.to_dict()) == task


def test_task_json_keys():
    task = PendingTask(type="DELETE", file_path="x", target="h:1")
    assert task.to_dict() == {"type": "DELETE", "filepath": "x", "target": "h:1", "retries": 0}


def test_load_missing_is_empty(tmp_path):
    assert RetryQueue(tmp_path / "log" / "retry_queue.json").load() == []


def test_add_and_load(tmp_path):
    queue = RetryQueue(tmp_path / "log" / "retry_queue.json")
    first = PendingTask(type="TRANSFER", file_path="a", target="h:1", retries=3)
    second = PendingTask(type="DELETE", file_path="b", target="h:2")
    queue.add(first)
    queue.add(second)
    assert queue.load() == [first, second]


def test_save_overwrites(tmp_path):
    path = tmp_path / "retry_queue.json"
    queue = RetryQueue(path)
    queue.add(PendingTask(type="TRANSFER", file_path="a", target="h:1"))
    kept = PendingTask(type="DELETE", file_path="b", target="h:2", retries=1)
    queue.save([kept])
    assert queue.load() == [kept]
    assert json.loads(path.read_text())[0]["filepath"] == "b"


def test_load_invalid_json_raises(tmp_path):
    path = tmp_path / "retry_queue.json"
    path.write_text("[oops")
    with pytest.raises(RetryQueueError):
        RetryQueue(path).load()


def test_add_replaces_corrupt_queue(tmp_path):
    path = tmp_path / "retry_queue.json"
    path.write_text("garbage")
    queue = RetryQueue(path)
    task = PendingTask(type="TRANSFER", file_path="a", target="h:1")
    queue.add(task)
    assert queue.load() == [task]