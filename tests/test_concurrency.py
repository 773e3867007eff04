import subprocess
import sys
import threading
import time
import unittest

from media_worker.cancellation import CancellationToken
from media_worker.engine_pool import EnginePool
from media_worker.errors import (
    CancellationError,
    ExternalEngineError,
    QueueFullError,
    ResourceExhaustionError,
    StageTimeoutError,
)
from media_worker.pipeline.process import ProcessTracker, run_managed
from media_worker.worker_pool import WorkerPool


class Engine:
    def __init__(self):
        self.closed = False

    def close(self):
        self.closed = True


def sleeper(seconds=30):
    return lambda: subprocess.Popen([sys.executable, "-c", f"import time; time.sleep({seconds})"],
                                    stdout=subprocess.PIPE, stderr=subprocess.PIPE)


class TestEnginePool(unittest.TestCase):

    def test_reuses_released_instances(self):
        pool = EnginePool(Engine, max_size=2)

        first = pool.acquire()
        pool.release(first)
        second = pool.acquire()

        self.assertIs(first, second)
        self.assertEqual(pool.created, 1)

    def test_occupancy_never_exceeds_max_size(self):
        pool = EnginePool(Engine, max_size=2, acquire_timeout=10)
        current = []
        peak = []
        lock = threading.Lock()

        def work():
            with pool.lease():
                with lock:
                    current.append(1)
                    peak.append(len(current))
                time.sleep(0.02)
                with lock:
                    current.pop()

        threads = [threading.Thread(target=work) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertLessEqual(max(peak), 2)
        self.assertEqual(pool.get_stats()["peak_in_use"], 2)
        self.assertEqual(pool.in_use, 0)
        self.assertLessEqual(pool.created, 2)

    def test_acquire_times_out(self):
        pool = EnginePool(Engine, max_size=1)
        pool.acquire()

        start = time.monotonic()
        with self.assertRaises(ResourceExhaustionError):
            pool.acquire(timeout=0.2)
        self.assertLess(time.monotonic() - start, 2)

    def test_acquire_observes_cancellation(self):
        pool = EnginePool(Engine, max_size=1)
        pool.acquire()
        token = CancellationToken()
        threading.Timer(0.1, token.cancel).start()

        with self.assertRaises(CancellationError):
            pool.acquire(timeout=5, token=token)

    def test_factory_failure_frees_slot(self):
        calls = []

        def factory():
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("model missing")
            return Engine()

        pool = EnginePool(factory, max_size=1)
        with self.assertRaises(ExternalEngineError) as ctx:
            pool.acquire()
        self.assertTrue(ctx.exception.fatal)
        self.assertEqual(pool.in_use, 0)

        self.assertIsInstance(pool.acquire(timeout=0.5), Engine)

    def test_discard_closes_instance(self):
        pool = EnginePool(Engine, max_size=1)
        engine = pool.acquire()

        pool.discard(engine)

        self.assertTrue(engine.closed)
        self.assertEqual(pool.created, 0)
        self.assertIsNot(pool.acquire(), engine)

    def test_closed_pool_rejects_acquire(self):
        pool = EnginePool(Engine, max_size=1)
        engine = pool.acquire()
        pool.release(engine)

        pool.close()

        self.assertTrue(engine.closed)
        with self.assertRaises(ResourceExhaustionError):
            pool.acquire(timeout=0.1)


class TestManagedProcess(unittest.TestCase):

    def test_captures_output(self):
        tracker = ProcessTracker()
        output = run_managed(
            lambda: subprocess.Popen([sys.executable, "-c", "import sys; print('ok'); sys.exit(3)"],
                                     stdout=subprocess.PIPE, stderr=subprocess.PIPE),
            name="echo", tracker=tracker)

        self.assertEqual(output.returncode, 3)
        self.assertEqual(output.stdout.strip(), b"ok")
        self.assertEqual(tracker.get_stats(), {"active": 0, "started": 1})

    def test_timeout_kills_child(self):
        tracker = ProcessTracker()
        start = time.monotonic()

        with self.assertRaises(StageTimeoutError):
            run_managed(sleeper(), name="sleeper", timeout=0.3, tracker=tracker)

        self.assertLess(time.monotonic() - start, 10)
        self.assertEqual(tracker.active, 0)

    def test_cancellation_kills_child(self):
        tracker = ProcessTracker()
        token = CancellationToken()
        threading.Timer(0.2, token.cancel, args=("stop",)).start()

        with self.assertRaises(CancellationError) as ctx:
            run_managed(sleeper(), name="sleeper", token=token, tracker=tracker)

        self.assertEqual(str(ctx.exception), "stop")
        self.assertEqual(tracker.active, 0)

    def test_cancelled_token_never_starts_process(self):
        token = CancellationToken()
        token.cancel()
        started = []

        with self.assertRaises(CancellationError):
            run_managed(lambda: started.append(1), name="never", token=token)
        self.assertEqual(started, [])

    def test_missing_executable_is_fatal(self):
        with self.assertRaises(ExternalEngineError) as ctx:
            run_managed(lambda: subprocess.Popen(["/nonexistent/ffmpeg"]), name="ffmpeg")
        self.assertTrue(ctx.exception.fatal)


class TestWorkerPool(unittest.TestCase):

    def test_processes_jobs_in_parallel(self):
        seen = []
        lock = threading.Lock()

        def handler(job_id):
            time.sleep(0.01)
            with lock:
                seen.append(job_id)

        pool = WorkerPool(handler, size=3, max_queue=10)
        pool.start()
        for i in range(6):
            pool.submit(str(i))
        pool.join()
        pool.stop()

        self.assertEqual(sorted(seen), [str(i) for i in range(6)])

    def test_handler_errors_do_not_kill_workers(self):
        seen = []

        def handler(job_id):
            if job_id == "bad":
                raise RuntimeError("boom")
            seen.append(job_id)

        pool = WorkerPool(handler, size=1, max_queue=10)
        pool.start()
        pool.submit("bad")
        pool.submit("good")
        pool.join()
        pool.stop()

        self.assertEqual(seen, ["good"])

    def test_bounded_queue(self):
        pool = WorkerPool(lambda job_id: None, size=1, max_queue=2)
        pool.submit("a")
        pool.submit("b")

        with self.assertRaises(QueueFullError):
            pool.submit("c")
        self.assertEqual(pool.drain(), ["a", "b"])
        self.assertEqual(pool.pending, 0)

    def test_stop_with_full_queue_and_late_submit(self):
        release = threading.Event()
        pool = WorkerPool(lambda job_id: release.wait(5), size=1, max_queue=1)
        pool.start()
        pool.submit("running")
        deadline = time.monotonic() + 5
        while pool.busy == 0:
            self.assertLess(time.monotonic(), deadline)
            time.sleep(0.01)
        pool.submit("queued")

        pool.close()
        with self.assertRaises(QueueFullError):
            pool.submit("late")
        self.assertEqual(pool.drain(), ["queued"])

        stopper = threading.Thread(target=pool.stop, kwargs={"timeout": 5})
        stopper.start()
        release.set()
        stopper.join(5)

        self.assertFalse(stopper.is_alive())
        self.assertTrue(pool.closed)


if __name__ == '__main__':
    unittest.main()
