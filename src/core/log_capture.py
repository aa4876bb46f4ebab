"""
Scoped log capture on top of loguru sinks.

Callers that need the log tail of a run (for example to return it in a
response body) add a temporary sink for the duration of the run instead of
replacing any global output function. Other sinks keep receiving every
message.
"""

from collections import deque
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Deque, Iterator, List, Tuple
from uuid import uuid4

from loguru import logger


_active_captures: ContextVar[Tuple[str, ...]] = ContextVar("active_captures", default=())


class LogCapture:
    """
    Bounded buffer of formatted log lines.

    Attributes:
        limit: Maximum number of lines retained (oldest dropped first)
    """

    def __init__(self, limit: int = 50):
        if limit <= 0:
            raise ValueError(f"limit must be positive, got {limit}")
        self.limit = limit
        self._lines: Deque[str] = deque(maxlen=limit)

    def write(self, message) -> None:
        record = message.record
        prefix = "ERROR: " if record["level"].no >= 40 else ""
        self._lines.append(f"{prefix}{record['message']}")

    @property
    def lines(self) -> List[str]:
        return list(self._lines)


@contextmanager
def capture_logs(limit: int = 50, level: str = "INFO") -> Iterator[LogCapture]:
    """
    Capture log messages emitted inside the block.

    Only messages logged from the block's own context (including tasks
    created inside it) are captured, so concurrent captures do not see each
    other's lines. Nested captures each receive the inner lines.

    Examples:
        >>> with capture_logs(limit=50) as captured:
        ...     logger.info("hello")
        >>> captured.lines
        ['hello']
    """
    capture = LogCapture(limit)
    capture_id = uuid4().hex
    capture_ids = _active_captures.get() + (capture_id,)

    def _own_lines(record) -> bool:
        return capture_id in record["extra"].get("capture_ids", ())

    sink_id = logger.add(capture.write, level=level, format="{message}", filter=_own_lines)
    token = _active_captures.set(capture_ids)
    try:
        with logger.contextualize(capture_ids=capture_ids):
            yield capture
    finally:
        _active_captures.reset(token)
        logger.remove(sink_id)
