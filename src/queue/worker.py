"""
Queue worker: claims one task at a time and runs it under a hard timeout
"""
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Callable, Optional

from sqlalchemy.orm import Session, sessionmaker

from src.config import Settings, get_settings
from src.database.connection import session_scope

from .queue import claim, complete, fail, reclaim_stale
from .tasks import TaskContext, dispatch

logger = logging.getLogger(__name__)

RECLAIM_EVERY_SECONDS = 60


class Worker:
    def __init__(self, context_factory: Callable[[Session], TaskContext],
                 session_factory: Optional[sessionmaker] = None, settings: Optional[Settings] = None,
                 poll_interval: float = 1.0):
        self.context_factory = context_factory
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.poll_interval = poll_interval
        self._pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix='task')
        self._last_reclaim = 0.0

    def _run_task(self, url: str, body: dict) -> None:
        # Handlers get their own session; the claiming session stays with the worker thread
        with session_scope(self.session_factory) as db:
            dispatch(self.context_factory(db), url, body)

    def run_once(self) -> bool:
        """Claim and run one task; returns False when nothing was available"""
        with session_scope(self.session_factory) as db:
            if time.monotonic() - self._last_reclaim > RECLAIM_EVERY_SECONDS:
                # A lease outlives the timeout so only dead workers lose their tasks
                reclaim_stale(db, self.settings.task_timeout_seconds * 2)
                self._last_reclaim = time.monotonic()

            task = claim(db)
            if task is None:
                return False

            logger.debug(f"Running task {task.id} {task.url} (attempt {task.attempts})")
            future = self._pool.submit(self._run_task, task.url, dict(task.body))
            try:
                future.result(timeout=self.settings.task_timeout_seconds)
            except FutureTimeoutError:
                # The thread cannot be killed; abandon it and start a fresh pool
                self._pool.shutdown(wait=False)
                self._pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix='task')
                fail(db, task, f"timed out after {self.settings.task_timeout_seconds}s",
                     self.settings.max_task_attempts, self.settings.retry_backoff_seconds)
                return True
            except Exception as e:
                logger.exception(f"Task {task.id} {task.url} failed")
                fail(db, task, f"{type(e).__name__}: {e}",
                     self.settings.max_task_attempts, self.settings.retry_backoff_seconds)
                return True

            complete(db, task)
            return True

    def run_forever(self, stop_event: Optional[threading.Event] = None) -> None:
        stop_event = stop_event or threading.Event()
        while not stop_event.is_set():
            if not self.run_once():
                stop_event.wait(self.poll_interval)
        self._pool.shutdown(wait=True)
