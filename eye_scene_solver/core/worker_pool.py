"""Optional process pool for per-ellipse and per-frame work."""

import logging
import multiprocessing as mp
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Sequence

logger = logging.getLogger(__name__)

TaskMapper = Callable[[Callable[[Any], Any], Sequence[Any]], list[Any]]


def _serial_map(worker_fn: Callable[[Any], Any], tasks: Sequence[Any]) -> list[Any]:
    return [worker_fn(task) for task in tasks]


def _quiet_worker_logging() -> None:
    logging.getLogger("eye_scene_solver").setLevel(logging.WARNING)


def resolve_n_workers(n_workers: int | None) -> int:
    """None means all cores."""
    if n_workers is None:
        return mp.cpu_count()
    if n_workers < 1:
        raise ValueError(f"n_workers must be >= 1 or None, got {n_workers}")
    return n_workers


@contextmanager
def worker_pool(*, n_workers: int | None) -> Iterator[TaskMapper]:
    """
    Yield an order-preserving map function.

    With one worker the tasks run in this process; otherwise a
    multiprocessing.Pool lives for the duration of the block, so repeated
    objective evaluations reuse the same workers. Worker functions must be
    picklable (module-level functions, or functools.partial of them).

    Args:
        n_workers: Number of processes (None = all cores, 1 = serial)
    """
    n_processes = resolve_n_workers(n_workers)
    if n_processes == 1:
        yield _serial_map
        return

    logger.info(f"Starting worker pool with {n_processes} processes")
    with mp.Pool(processes=n_processes, initializer=_quiet_worker_logging) as pool:
        def pool_map(worker_fn: Callable[[Any], Any], tasks: Sequence[Any]) -> list[Any]:
            chunksize = max(1, len(tasks) // (4 * n_processes))
            return pool.map(worker_fn, tasks, chunksize=chunksize)

        yield pool_map
