from datetime import timedelta

import pytest
from loguru import logger

from pixiv_crawler.utils import logger as logger_module
from pixiv_crawler.utils.logger import TaskLogBuffer, setup_logger


@pytest.fixture
def buffer():
    buffer = TaskLogBuffer(max_records=3)
    sink = logger.add(buffer.write, level="DEBUG")
    yield buffer
    logger.remove(sink)


def test_buffer_keeps_task_id_and_level(buffer):
    logger.bind(task_id="single_1_1").warning("rate limited")

    records = buffer.query("single_1_1")

    assert len(records) == 1
    assert records[0]["level"] == "WARNING"
    assert records[0]["message"] == "rate limited"


def test_buffer_is_bounded(buffer):
    for i in range(5):
        logger.info(f"message {i}")

    assert [r["message"] for r in buffer.query()] == ["message 2", "message 3", "message 4"]
    assert [r["message"] for r in buffer.query(limit=1)] == ["message 4"]
    assert buffer.query(limit=0) == []


def test_buffer_drops_expired_records(buffer):
    logger.info("old")
    buffer._records[0]["time"] -= timedelta(hours=2)
    logger.info("new")

    assert [r["message"] for r in buffer.query()] == ["new"]


def test_setup_logger_binds_node_id(monkeypatch, tmp_path):
    monkeypatch.setattr(logger_module, "_logger_initialized", False)
    monkeypatch.setattr(logger_module, "_sink_ids", [])
    log_path = tmp_path / "logs" / "crawler.log"

    bound = setup_logger("INFO", str(log_path), node_id="node-7")
    bound.bind(task_id="t-9").info("hello")
    for sink_id in logger_module._sink_ids:
        logger.remove(sink_id)

    content = log_path.read_text()
    assert "node=node-7" in content
    assert "task=t-9" in content
    assert logger_module.task_log_buffer.query("t-9")[-1]["message"] == "hello"
