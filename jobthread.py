# GPL v2 License
# (c) 2024 EvilWarning <...> + contributors

import threading
from concurrent.futures import Future
from queue import Queue
from typing import Any, Callable, Optional


JOB_QUEUE_MAX_SIZE = 64             # jobs waiting behind the running one

class JobWorker(threading.Thread):
    __slots__ = ['jobs', 'exception_handler', 'busy', 'terminate']

    """ Dedicated worker thread that runs long, blocking jobs one at a time.
    Backup, archive inspection and restore are sequential I/O-bound
    procedures; running them here keeps a presentation layer free to poll
    progress. Jobs run strictly in submission order and are never run in
    parallel with each other. There is no cancellation: a running job goes
    to completion or to its first error.
    Attributes:
        jobs (Queue[Any]): Pending (future, func, args, kwargs) items; None stops the thread.
        exception_handler (Optional[Callable[[Exception], None]]): Called with any exception a job raises.
        busy (bool): True while a job is running.
        terminate (bool): Set once the stop sentinel has been consumed.
    Methods:
        submit(func, *args, **kwargs) -> Future: Queue a job.
        wait_completion(): Block until every queued job has finished.
        shutdown(wait=True): Stop after the queued jobs have run.
    Args:
        name (Optional[str]): Thread name.
        exception_handler (Optional[Callable[[Exception], None]]): Optional observer for job failures.
        params (Optional[dict]): 'LOGGER' and 'DEBUG_MODE' tweaks.
    """
    def __init__(self,  name: Optional[str] = None,
                        exception_handler: Optional[Callable[[Exception], None]] = None,
                        params: Optional[dict] = None) -> None:
        super().__init__()
        self.jobs: Queue[Any] = Queue(JOB_QUEUE_MAX_SIZE)
        self.exception_handler = exception_handler
        self.daemon = True
        self.name: str = name if name else "jobthread_worker"
        self.busy: bool = False
        self.terminate = False
        self.params = params if params is not None else {}

        self.__logger: Any = self.params.get('LOGGER', None)
        self.__DEBUG_MODE: bool = self.params.get('DEBUG_MODE', False)
        self.start()

    def run(self) -> None:
        """Fetch and run jobs until the stop sentinel arrives.
        A job's exception is stored on its Future and handed to the
        exception handler; it never kills the thread.
        """
        while not self.terminate:
            item = self.jobs.get()
            try:
                if item is None:
                    self.terminate = True
                    continue
                future, func, args, kwargs = item
                if not future.set_running_or_notify_cancel():
                    continue
                self.busy = True
                if self.__DEBUG_MODE is True and self.__logger is not None:
                    self.__logger.debug("%s: running %s", self.name, getattr(func, "__name__", func))
                try:
                    result = func(*args, **kwargs)
                except Exception as e:
                    future.set_exception(e)
                    if self.exception_handler:
                        self.exception_handler(e)
                    elif self.__logger is not None:
                        self.__logger.debug("%s: job failed: %s", self.name, e)
                else:
                    future.set_result(result)
                finally:
                    self.busy = False
            finally:
                self.jobs.task_done()

    def submit(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        """Queue func(*args, **kwargs) and return a Future for its result.

        Raises:
            RuntimeError: If the worker has been shut down.
        """
        if self.terminate or not self.is_alive():
            raise RuntimeError(f"{self.name} is shut down")
        future: Future = Future()
        self.jobs.put((future, func, args, kwargs))
        return future

    def wait_completion(self) -> None:
        self.jobs.join()

    def shutdown(self, wait: bool = True) -> None:
        """Stop the thread once the jobs already queued have run."""
        if self.is_alive():
            self.jobs.put(None)
            if wait:
                self.join()
        if self.__DEBUG_MODE is True and self.__logger is not None:
            self.__logger.debug("%s: shut down", self.name)
