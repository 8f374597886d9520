"""Fan-out helpers for embarrassingly parallel training units."""
from __future__ import annotations

import threading
from typing import Callable, Iterable, List, Optional, TypeVar

from joblib import Parallel, delayed

from tradescore.exceptions import OperationCancelled

T = TypeVar("T")
R = TypeVar("R")


def check_cancelled(cancel_event: Optional[threading.Event], what: str) -> None:
    """Raise :class:`OperationCancelled` if ``cancel_event`` is set."""
    if cancel_event is not None and cancel_event.is_set():
        raise OperationCancelled(f"{what} cancelled")


def run_units(
    func: Callable[[T], R],
    items: Iterable[T],
    *,
    n_jobs: int = 1,
    cancel_event: Optional[threading.Event] = None,
    what: str = "operation",
) -> List[R]:
    """Apply ``func`` to every item, optionally across worker threads.

    Results are returned in input order.  Each unit is expected to derive its
    randomness from its own seed so the output does not depend on ``n_jobs``.
    """

    tasks = list(items)

    def _execute(item: T) -> R:
        check_cancelled(cancel_event, what)
        return func(item)

    if n_jobs == 1 or len(tasks) <= 1:
        return [_execute(item) for item in tasks]
    return Parallel(n_jobs=n_jobs, prefer="threads")(
        delayed(_execute)(item) for item in tasks
    )


__all__ = ["check_cancelled", "run_units"]
