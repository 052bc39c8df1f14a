import threading
import time
import unittest

from mrfparquet.pool import TaskPool


class TestTaskPool(unittest.TestCase):

    def setUp(self):
        self.pool = TaskPool(max_workers=3, max_capacity=2)

    def tearDown(self):
        self.pool.stop_and_wait()

    def test_wait_returns_after_every_task(self):
        done = []
        lock = threading.Lock()

        def task(i):
            time.sleep(0.001)
            with lock:
                done.append(i)

        group = self.pool.group('test')
        for i in range(50):
            group.submit(task, i)
        group.wait()

        self.assertEqual(sorted(done), list(range(50)))
        self.assertEqual(group.submitted, 50)

    def test_wait_on_empty_group(self):
        self.pool.group('empty').wait()

    def test_wait_raises_task_error(self):

        def fail():
            raise ValueError('boom')

        group = self.pool.group('failing')
        group.submit(fail)

        with self.assertRaises(ValueError):
            group.wait()

    def test_submit_fails_fast_after_an_error(self):

        def fail():
            raise ValueError('boom')

        group = self.pool.group('failing')
        group.submit(fail)
        with self.assertRaises(ValueError):
            group.wait()

        with self.assertRaises(ValueError):
            group.submit(lambda: None)

    def test_groups_are_independent(self):

        def fail():
            raise ValueError('boom')

        failing = self.pool.group('failing')
        failing.submit(fail)
        with self.assertRaises(ValueError):
            failing.wait()

        ran = threading.Event()
        other = self.pool.group('other')
        other.submit(ran.set)
        other.wait()
        self.assertTrue(ran.is_set())

    def test_submit_blocks_when_full(self):
        release = threading.Event()
        group = self.pool.group('blocked')

        # One task per worker, then enough to fill the queue
        for _ in range(3 + 2):
            group.submit(release.wait)

        submitted = threading.Event()

        def submit_one_more():
            group.submit(lambda: None)
            submitted.set()

        thread = threading.Thread(target=submit_one_more)
        thread.start()

        self.assertFalse(submitted.wait(0.2))

        release.set()
        thread.join(5)
        self.assertTrue(submitted.is_set())
        group.wait()

    def test_submit_after_stop_raises(self):
        self.pool.stop_and_wait()

        with self.assertRaises(RuntimeError):
            self.pool.group('late').submit(lambda: None)

    def test_invalid_sizes(self):
        with self.assertRaises(ValueError):
            TaskPool(max_workers=0)
        with self.assertRaises(ValueError):
            TaskPool(max_capacity=0)
