"""JobWorker runs jobs one at a time, in order."""

import threading

import pytest

from jobthread import JobWorker


@pytest.fixture
def worker():
    w = JobWorker(name="test_worker")
    yield w
    w.shutdown()


class TestJobWorker:
    def test_result(self, worker):
        assert worker.submit(lambda a, b=0: a + b, 2, b=3).result(timeout=5) == 5

    def test_submission_order(self, worker):
        seen = []
        futures = [worker.submit(seen.append, i) for i in range(20)]
        futures[-1].result(timeout=5)
        assert seen == list(range(20))

    def test_runs_off_the_calling_thread(self, worker):
        assert worker.submit(threading.current_thread).result(timeout=5) is worker

    def test_exception_lands_on_future(self):
        caught = []
        w = JobWorker(exception_handler=caught.append)
        try:
            def boom():
                raise ValueError("bad input")

            future = w.submit(boom)
            with pytest.raises(ValueError, match="bad input"):
                future.result(timeout=5)
            w.wait_completion()
            assert len(caught) == 1 and isinstance(caught[0], ValueError)
            # the thread survives a failed job
            assert w.submit(lambda: "ok").result(timeout=5) == "ok"
        finally:
            w.shutdown()

    def test_wait_completion(self, worker):
        done = threading.Event()
        worker.submit(done.set)
        worker.wait_completion()
        assert done.is_set()
        assert not worker.busy

    def test_submit_after_shutdown(self):
        w = JobWorker()
        w.shutdown()
        assert not w.is_alive()
        with pytest.raises(RuntimeError):
            w.submit(print)
