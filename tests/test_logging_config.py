from __future__ import annotations

import logging
import queue

import allure
import pytest

from dlengine.logging_config import rotate_latest_log, setup_logging

pytestmark = [
    allure.epic("Download Engine"),
    allure.feature("Logging"),
]


@pytest.fixture
def root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield root
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


def test_rotate_moves_latest_log_aside(tmp_path) -> None:
    (tmp_path / "latest.log").write_text("previous session\n", encoding="utf-8")

    latest = rotate_latest_log(tmp_path)

    assert latest == tmp_path / "latest.log"
    assert not latest.exists()
    archives = [path for path in tmp_path.iterdir() if path.name != "latest.log"]
    assert len(archives) == 1
    assert archives[0].read_text(encoding="utf-8") == "previous session\n"


def test_rotate_without_previous_log_is_a_no_op(tmp_path) -> None:
    assert rotate_latest_log(tmp_path) == tmp_path / "latest.log"
    assert list(tmp_path.iterdir()) == []


def test_setup_writes_file_log_at_configured_level(tmp_path, root_logger) -> None:
    log_dir = tmp_path / "logs"
    setup_logging('WARNING', log_dir=log_dir)

    logging.getLogger("dlengine.test").info("quiet")
    logging.getLogger("dlengine.test").warning("loud")
    for handler in root_logger.handlers:
        handler.flush()

    text = (log_dir / "latest.log").read_text(encoding="utf-8")
    assert "loud" in text
    assert "quiet" not in text


def test_setup_forwards_records_to_a_queue(tmp_path, root_logger) -> None:
    log_queue: queue.Queue = queue.Queue()
    setup_logging('INFO', log_queue=log_queue, log_dir=tmp_path)

    logging.getLogger("dlengine.test").debug("for the log view")

    messages = []
    while not log_queue.empty():
        messages.append(log_queue.get_nowait().getMessage())
    assert "--- Logging initialized ---" in messages
    assert "for the log view" in messages
