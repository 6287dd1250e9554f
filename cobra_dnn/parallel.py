import os
import logging
import threading
from concurrent.futures import ThreadPoolExecutor

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

# Below this many work items the kernel just runs on the calling thread
MIN_PARALLEL_ITEMS = 2

_lock = threading.Lock()
_executor = None
_workers = None
_local = threading.local()


def _default_worker_count():
    value = os.getenv('COBRA_DNN_WORKERS')
    if value:
        try:
            count = int(value)
        except ValueError:
            logger.warning("Ignoring invalid COBRA_DNN_WORKERS value %r", value)
        else:
            if count > 0:
                return count
            logger.warning("Ignoring non-positive COBRA_DNN_WORKERS value %r", value)
    return os.cpu_count() or 1


def get_worker_count():
    """Number of threads used by the parallel kernels"""
    global _workers
    if _workers is None:
        _workers = _default_worker_count()
    return _workers


def set_worker_count(count):
    """Resize the shared worker pool (takes effect on the next kernel call)"""
    global _executor, _workers
    if count <= 0:
        raise ConfigurationError("The number of workers must be positive")
    with _lock:
        old = _executor
        _executor = None
        _workers = count
    if old is not None:
        old.shutdown(wait=True)


def _initializer():
    _local.worker = True


def _get_executor():
    global _executor
    with _lock:
        if _executor is None:
            _executor = ThreadPoolExecutor(
                max_workers=get_worker_count(),
                thread_name_prefix='cobra-dnn',
                initializer=_initializer)
            logger.debug("Started worker pool with %d threads", get_worker_count())
        return _executor


def _chunks(start, stop, parts):
    total = stop - start
    step, extra = divmod(total, parts)
    lo = start
    for i in range(parts):
        hi = lo + step + (1 if i < extra else 0)
        if hi > lo:
            yield lo, hi
        lo = hi


def parallel_for(start, stop, kernel):
    """
    Runs kernel(lo, hi) over disjoint sub-ranges of [start, stop) and waits for all of them.

    Each invocation must only write to the output locations of its own range.
    Calls issued from inside a worker run serially, so nested kernels can't starve the pool.
    Exceptions raised by any chunk are re-raised on the calling thread.
    """
    total = stop - start
    if total <= 0:
        return
    workers = get_worker_count()
    if total < MIN_PARALLEL_ITEMS or workers == 1 or getattr(_local, 'worker', False):
        kernel(start, stop)
        return
    executor = _get_executor()
    futures = [executor.submit(kernel, lo, hi) for lo, hi in _chunks(start, stop, min(workers, total))]
    for future in futures:
        future.result()


def parallel_map(func, items):
    """Applies func to every item on the worker pool and returns the results in order"""
    items = list(items)
    if len(items) < MIN_PARALLEL_ITEMS or get_worker_count() == 1 or getattr(_local, 'worker', False):
        return [func(item) for item in items]
    return list(_get_executor().map(func, items))
