"""
Background Operations.

This module runs install/update/uninstall operations off the caller's thread.

Key features:
- Per-plugin-name locks so operations on one plugin never interleave
- Thread pool task runner returning handles with a future
- Completion listeners (the "notify asynchronously" side channel)
"""

import logging
import threading
import uuid
from collections.abc import Callable, Iterator
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


class NamedLocks:
    """
    Registry of one lock per name.

    Example:
        locks = NamedLocks()
        with locks.hold("my-plugin"):
            ...  # exclusive for "my-plugin" only
    """

    def __init__(self):
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def lock_for(self, name: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(name)
            if lock is None:
                lock = self._locks[name] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, name: str) -> Iterator[None]:
        """Hold the lock for `name` for the duration of the block."""
        lock = self.lock_for(name)
        if not lock.acquire(blocking=False):
            logger.info("waiting for running operation on %s", name)
            lock.acquire()
        try:
            yield
        finally:
            lock.release()

    def is_locked(self, name: str) -> bool:
        return self.lock_for(name).locked()


@dataclass
class TaskHandle:
    """
    Acknowledgment of a submitted operation.

    Attributes:
        task_id: Unique id
        operation: "install", "update" or "uninstall"
        plugin: Plugin name or template reference the task acts on
        future: Completion of the operation
    """

    task_id: str
    operation: str
    plugin: str | None
    future: Future = field(repr=False)

    def done(self) -> bool:
        return self.future.done()

    def result(self, timeout: float | None = None) -> Any:
        """Wait for the operation and return its result (re-raises its error)."""
        return self.future.result(timeout=timeout)

    def error(self, timeout: float | None = None) -> BaseException | None:
        return self.future.exception(timeout=timeout)


Listener = Callable[[TaskHandle, Any, BaseException | None], None]


class TaskRunner:
    """
    Thread pool for background operations.

    Example:
        runner = TaskRunner(max_workers=4)
        handle = runner.submit("install", "foo", installer.install, ref, tag)
        handle.result()
    """

    def __init__(self, max_workers: int = 4):
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="debplug")
        self._listeners: list[Listener] = []
        self._lock = threading.Lock()

    def add_listener(self, listener: Listener) -> None:
        """Register a callback invoked with (handle, result, error) on completion."""
        with self._lock:
            self._listeners.append(listener)

    def submit(
        self,
        operation: str,
        plugin: str | None,
        fn: Callable[..., Any],
        *args: Any,
        **kwargs: Any,
    ) -> TaskHandle:
        """
        Schedule fn(*args, **kwargs) and return immediately.

        Returns:
            TaskHandle for the scheduled operation
        """
        future = self._executor.submit(fn, *args, **kwargs)
        handle = TaskHandle(
            task_id=uuid.uuid4().hex,
            operation=operation,
            plugin=plugin,
            future=future,
        )
        logger.debug("submitted %s task %s for %s", operation, handle.task_id, plugin)
        future.add_done_callback(lambda f: self._complete(handle, f))
        return handle

    def _complete(self, handle: TaskHandle, future: Future) -> None:
        if future.cancelled():
            logger.info("%s of %s cancelled", handle.operation, handle.plugin)
            return
        error = future.exception()
        result = None if error else future.result()
        if error is not None:
            logger.error("%s of %s failed: %s", handle.operation, handle.plugin, error)
        else:
            logger.info("%s of %s finished", handle.operation, handle.plugin)

        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(handle, result, error)
            except Exception:
                logger.exception("task listener failed for %s", handle.task_id)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
