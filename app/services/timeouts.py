import concurrent.futures
import logging

logger = logging.getLogger(__name__)


class CallTimedOut(Exception):
    def __init__(self, name: str, timeout: float):
        self.name = name
        self.timeout = timeout
        super().__init__(f"{name} did not complete within {timeout}s")


def call_with_timeout(name: str, timeout: float, fn, *args, **kwargs):
    """Run ``fn`` in a worker thread and wait at most ``timeout`` seconds.

    On timeout the worker is abandoned (its result is discarded) and
    ``CallTimedOut`` is raised. Exceptions raised by ``fn`` propagate.
    """
    executor = concurrent.futures.ThreadPoolExecutor(max_workers=1)
    future = executor.submit(fn, *args, **kwargs)
    try:
        return future.result(timeout=timeout)
    except concurrent.futures.TimeoutError as exc:
        future.cancel()
        logger.warning(f"{name} timed out after {timeout}s")
        raise CallTimedOut(name, timeout) from exc
    finally:
        executor.shutdown(wait=False)
