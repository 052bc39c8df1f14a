"""
A fixed number of worker threads pulling tasks from a bounded queue.

Submitting blocks while the queue is full, so a reader can't get more than
`max_capacity` batches ahead of the workers no matter how big the shard is.
Tasks are submitted through a TaskGroup; `TaskGroup.wait()` is the barrier
that returns once every task of the group has run, and raises the first
exception any of them raised.
"""
from __future__ import annotations

import logging
import queue
import threading
from typing import Callable

log = logging.getLogger(__name__)

MAX_WORKERS = 5
MAX_CAPACITY = 4

# Tells a worker to exit
_STOP = None


class TaskGroup:

	def __init__(self, pool: TaskPool, name: str):
		self.pool = pool
		self.name = name
		self.error: BaseException | None = None
		self._pending = 0
		self._submitted = 0
		self._cond = threading.Condition()

	@property
	def submitted(self) -> int:
		return self._submitted

	def submit(self, func: Callable, *args, **kwargs) -> None:
		"""Blocks while the pool's queue is full. Raises straight away
		if a task of this group already failed."""
		if self.error is not None:
			raise self.error

		with self._cond:
			self._pending += 1
			self._submitted += 1

		try:
			self.pool._put((self, func, args, kwargs))
		except BaseException:
			self._task_done()
			raise

	def wait(self) -> None:

		with self._cond:
			while self._pending:
				self._cond.wait()

		if self.error is not None:
			raise self.error

	def _task_done(self, error: BaseException | None = None) -> None:

		with self._cond:
			if error is not None and self.error is None:
				self.error = error
			self._pending -= 1
			if not self._pending:
				self._cond.notify_all()


class TaskPool:

	def __init__(self, max_workers: int = MAX_WORKERS, max_capacity: int = MAX_CAPACITY):

		if max_workers < 1:
			raise ValueError(f'max_workers must be at least 1: {max_workers}')
		if max_capacity < 1:
			raise ValueError(f'max_capacity must be at least 1: {max_capacity}')

		self.max_workers = max_workers
		self.max_capacity = max_capacity
		self._queue: queue.Queue = queue.Queue(maxsize=max_capacity)
		self._stopped = False

		self._workers = []
		for i in range(max_workers):
			worker = threading.Thread(
				target=self._work,
				name=f'mrfparquet-worker-{i}',
				daemon=True,
			)
			worker.start()
			self._workers.append(worker)

	def group(self, name: str = '') -> TaskGroup:

		return TaskGroup(self, name)

	def _put(self, task) -> None:

		if self._stopped:
			raise RuntimeError('Task pool is stopped')
		self._queue.put(task)

	def _work(self) -> None:

		while True:
			task = self._queue.get()
			if task is _STOP:
				return

			group, func, args, kwargs = task

			# Once a group has failed, drop the rest of its work
			if group.error is not None:
				group._task_done()
				continue

			try:
				func(*args, **kwargs)
			except Exception as e:
				log.debug(f'Task in group {group.name!r} failed: {e}')
				group._task_done(e)
			else:
				group._task_done()

	def stop_and_wait(self) -> None:
		"""Runs whatever is queued, then stops the workers"""
		if self._stopped:
			return
		self._stopped = True

		for _ in self._workers:
			self._queue.put(_STOP)

		for worker in self._workers:
			worker.join()

	def __enter__(self):
		return self

	def __exit__(self, exc_type, exc_val, exc_tb):
		self.stop_and_wait()
