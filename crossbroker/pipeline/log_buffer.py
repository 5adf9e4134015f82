"""
Job Log Buffer - buffers log lines per job so parallel jobs never interleave
"""
import logging
import threading
from typing import List, Tuple

logger = logging.getLogger()

_flush_lock = threading.Lock()


class JobLogBuffer:
    """Buffers logs for a single job and flushes atomically"""

    def __init__(self, job_name: str):
        self.job_name = job_name
        self.buffer: List[Tuple[int, str]] = []
        self._lock = threading.Lock()

    def _append(self, level: int, msg: str):
        with self._lock:
            self.buffer.append((level, msg))

    def info(self, msg: str):
        self._append(logging.INFO, msg)

    def debug(self, msg: str):
        self._append(logging.DEBUG, msg)

    def warning(self, msg: str):
        self._append(logging.WARNING, msg)

    def error(self, msg: str):
        self._append(logging.ERROR, msg)

    @property
    def lines(self) -> List[str]:
        with self._lock:
            return [msg for _, msg in self.buffer]

    def flush(self):
        """Flush all buffered logs atomically to the root logger"""
        with _flush_lock:
            with self._lock:
                entries = list(self.buffer)
                self.buffer.clear()
            if not entries:
                return

            logger.info(f"=== JOB {self.job_name} ===")
            for level, msg in entries:
                logger.log(level, msg)
            logger.info(f"=== END JOB {self.job_name} ===")
            logger.info("")
