import os
import threading
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Any, Deque, Dict, List, Optional

from loguru import logger

LOG_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss} | {level} | node={extra[node_id]} "
    "| task={extra[task_id]} | {message}"
)
NO_TASK = "-"

_logger_initialized = False
_sink_ids: list[int] = []


class TaskLogBuffer:
    """
    In-memory loguru sink keeping the most recent records for the log query API.

    Only the last ``max_records`` records are kept, and records older than
    ``max_age`` are dropped when read.
    """

    def __init__(self, max_records: int = 1000, max_age: timedelta = timedelta(hours=1)):
        self.max_age = max_age
        self._records: Deque[Dict[str, Any]] = deque(maxlen=max_records)
        self._lock = threading.Lock()

    def write(self, message) -> None:
        record = message.record
        entry = {
            "time": record["time"].astimezone(timezone.utc),
            "level": record["level"].name,
            "task_id": record["extra"].get("task_id", NO_TASK),
            "message": record["message"],
        }
        with self._lock:
            self._records.append(entry)

    def query(self, task_id: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        cutoff = datetime.now(timezone.utc) - self.max_age
        with self._lock:
            while self._records and self._records[0]["time"] < cutoff:
                self._records.popleft()
            records = list(self._records)

        if task_id:
            records = [r for r in records if r["task_id"] == task_id]
        if limit <= 0:
            return []
        return [{**r, "time": r["time"].isoformat()} for r in records[-limit:]]

    def clear(self) -> None:
        with self._lock:
            self._records.clear()


task_log_buffer = TaskLogBuffer()


def setup_logger(
    log_level: str = "INFO",
    log_path: str = "/data/logs/pixiv_crawler.log",
    node_id: str | None = None,
):
    global _logger_initialized, _sink_ids

    resolved_node_id = node_id or os.getenv("NODE_ID") or str(os.getpid())

    if not _logger_initialized:
        os.makedirs(os.path.dirname(log_path), exist_ok=True)

        logger.remove()
        logger.configure(extra={"node_id": resolved_node_id, "task_id": NO_TASK})

        file_sink = logger.add(
            log_path,
            rotation="10 MB",
            retention="7 days",
            level=log_level,
            format=LOG_FORMAT,
        )
        console_sink = logger.add(
            lambda msg: print(msg, end=""),
            colorize=True,
            level=log_level,
            format=LOG_FORMAT,
        )
        buffer_sink = logger.add(task_log_buffer.write, level=log_level)

        _sink_ids = [file_sink, console_sink, buffer_sink]
        _logger_initialized = True

    return logger.bind(node_id=resolved_node_id)
