from __future__ import annotations

import logging
from typing import Literal

from ..config import settings

try:
    from redis import Redis
    from rq import Queue
except Exception:  # pragma: no cover - optional runtime path
    Redis = None  # type: ignore[assignment]
    Queue = None  # type: ignore[assignment]

logger = logging.getLogger(__name__)


class QueueManager:
    def __init__(self) -> None:
        self._queue = None
        if settings.use_redis_queue and Redis is not None and Queue is not None:
            try:
                redis_conn = Redis.from_url(settings.redis_url)
                redis_conn.ping()
                self._queue = Queue("gradefix", connection=redis_conn)
            except Exception as exc:
                logger.warning("QUEUE_UNAVAILABLE url=%s error=%s", settings.redis_url, exc)
                self._queue = None

    @property
    def mode(self) -> Literal["redis", "background"]:
        return "redis" if self._queue is not None else "background"

    def enqueue_test_recalculation(self, test_id: str) -> bool:
        if self._queue is None:
            return False
        self._queue.enqueue("gradefix.workers.tasks.run_test_recalculation", test_id)
        return True


queue_manager = QueueManager()
