"""Batch scheduler for multi-table operations.

Items run in fixed-size batches; the batch runs concurrently on a thread pool,
batches run one after another with a configurable pause in between.
Cancellation is cooperative and checked before each item starts.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, Iterable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class ScheduledOutcome(Generic[T]):
    """Result of one scheduled item."""

    item: T
    result: Any = None
    cancelled: bool = False


@dataclass
class BatchPlan:
    """Items split into batches."""

    batches: list[list] = field(default_factory=list)

    @property
    def total(self) -> int:
        return sum(len(batch) for batch in self.batches)


class BatchScheduler:
    """Run a callable over items in paced, bounded-concurrency batches."""

    def __init__(
        self,
        batch_size: int = 3,
        max_workers: int = 3,
        inter_batch_delay: float = 1.5,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize scheduler."""
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        if inter_batch_delay < 0:
            raise ValueError("inter_batch_delay cannot be negative")

        self.batch_size = batch_size
        self.max_workers = max_workers
        self.inter_batch_delay = inter_batch_delay
        self._sleep = sleep
        self._cancel_event = threading.Event()

    @classmethod
    def from_settings(cls, settings) -> "BatchScheduler":
        """Build a scheduler from the audit batch settings."""
        return cls(
            batch_size=settings.audit_batch_size,
            max_workers=settings.audit_batch_max_workers,
            inter_batch_delay=settings.audit_batch_delay_seconds,
        )

    def cancel(self) -> None:
        """Stop starting new items; running items finish."""
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    def plan(self, items: Iterable[T]) -> BatchPlan:
        items = list(items)
        return BatchPlan(
            batches=[items[i : i + self.batch_size] for i in range(0, len(items), self.batch_size)]
        )

    def _run_item(self, fn: Callable[[T], R], item: T) -> ScheduledOutcome:
        if self._cancel_event.is_set():
            return ScheduledOutcome(item=item, cancelled=True)
        return ScheduledOutcome(item=item, result=fn(item))

    def run(
        self,
        items: Iterable[T],
        fn: Callable[[T], R],
        on_batch_done: Optional[Callable[[int, list[ScheduledOutcome]], None]] = None,
    ) -> list[ScheduledOutcome]:
        """Run fn over items; outcomes keep the input order.

        fn is expected to report its own failures as results. An exception
        escaping fn propagates after the current batch finishes.
        """
        # A cancel belongs to the run it interrupted
        self._cancel_event.clear()
        plan = self.plan(items)
        outcomes: list[ScheduledOutcome] = []
        workers = min(self.max_workers, self.batch_size)

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="ciphertrail-batch") as executor:
            for index, batch in enumerate(plan.batches):
                if index > 0 and self.inter_batch_delay and not self._cancel_event.is_set():
                    self._sleep(self.inter_batch_delay)

                futures = [executor.submit(self._run_item, fn, item) for item in batch]
                batch_outcomes = [future.result() for future in futures]
                outcomes.extend(batch_outcomes)

                logger.debug(f"Batch {index + 1}/{len(plan.batches)} done ({len(batch)} items)")
                if on_batch_done is not None:
                    on_batch_done(index, batch_outcomes)

        return outcomes
