#!/usr/bin/env python3
# src/workqueue.py
"""
Keyed work queue shared by the cluster watch, the pod dispatchers and the
reconcile workers.

Semantics follow the client-go rate limiting queue:
- a key waiting in the queue is stored once, however often it is added
- a key is handed to at most one worker at a time; adding it while it is
  being processed re-queues it when the worker calls done()
- add_after() delays a key, add_rate_limited() delays it exponentially per
  consecutive failure until forget() is called

Instance events added with a key ride along with it and are handed to the
worker together with the key.
"""

import heapq
import itertools
import logging
import random
import threading
import time
from typing import Any, Dict, List, Optional, Set, Tuple

import metrics

logger = logging.getLogger("mariadb-operator.workqueue")


def calculate_exponential_backoff(
    attempt: int, base_delay: float = 1.0, max_delay: float = 30.0, jitter: bool = True
) -> float:
    """Calculate exponential backoff delay for retry attempts.

    Args:
        attempt: Retry attempt number (0-based)
        base_delay: Base delay in seconds
        max_delay: Maximum delay in seconds
        jitter: Add up to 20% random jitter, never exceeding max_delay

    Returns:
        Backoff delay in seconds
    """
    delay = min(base_delay * (2 ** attempt), max_delay)
    if jitter:
        # Add jitter to prevent thundering herd
        delay = min(delay + random.uniform(0.0, 0.2) * delay, max_delay)
    return delay


class WorkQueue:
    def __init__(self, backoff_base: float = 1.0, backoff_max: float = 30.0, jitter: bool = True):
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.jitter = jitter

        self._cond = threading.Condition()
        self._queue: List[str] = []
        self._dirty: Set[str] = set()
        self._processing: Set[str] = set()
        self._events: Dict[str, List[Any]] = {}
        self._delayed: List[Tuple[float, int, str]] = []
        self._ready_at: Dict[str, float] = {}
        self._failures: Dict[str, int] = {}
        self._seq = itertools.count()
        self._shutting_down = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    # -----------------------------
    # Producers
    # -----------------------------

    def add(self, key: str, event: Any = None):
        """Queue key, optionally attaching an instance event to it."""
        with self._cond:
            if self._shutting_down:
                return
            if event is not None:
                self._events.setdefault(key, []).append(event)
            self._add_locked(key)

    def _add_locked(self, key: str):
        if key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        metrics.queue_depth.set(len(self._queue))
        self._cond.notify()

    def add_after(self, key: str, delay: float):
        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            ready_at = time.monotonic() + delay
            current = self._ready_at.get(key)
            if current is not None and current <= ready_at:
                return
            self._ready_at[key] = ready_at
            heapq.heappush(self._delayed, (ready_at, next(self._seq), key))
            self._cond.notify()

    def add_rate_limited(self, key: str) -> float:
        with self._cond:
            attempt = self._failures.get(key, 0)
            self._failures[key] = attempt + 1
        delay = calculate_exponential_backoff(attempt, self.backoff_base, self.backoff_max, self.jitter)
        logger.debug(f"Requeue {key} after {delay:.2f}s (failure {attempt + 1})")
        self.add_after(key, delay)
        return delay

    def forget(self, key: str):
        with self._cond:
            self._failures.pop(key, None)

    def num_requeues(self, key: str) -> int:
        with self._cond:
            return self._failures.get(key, 0)

    # -----------------------------
    # Consumers
    # -----------------------------

    def _promote_due_locked(self) -> Optional[float]:
        """Move due delayed keys into the queue; return seconds until the next one."""
        now = time.monotonic()
        while self._delayed:
            ready_at, _, key = self._delayed[0]
            if self._ready_at.get(key) != ready_at:
                # superseded by an earlier add_after
                heapq.heappop(self._delayed)
                continue
            if ready_at > now:
                return ready_at - now
            heapq.heappop(self._delayed)
            del self._ready_at[key]
            self._add_locked(key)
        return None

    def get(self, timeout: Optional[float] = None) -> Optional[Tuple[str, List[Any]]]:
        """Block until a key is available; returns (key, events) or None on timeout/shutdown."""
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                next_due = self._promote_due_locked()
                if self._queue:
                    key = self._queue.pop(0)
                    self._dirty.discard(key)
                    self._processing.add(key)
                    metrics.queue_depth.set(len(self._queue))
                    return key, self._events.pop(key, [])
                if self._shutting_down:
                    return None

                wait = next_due
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)

    def done(self, key: str):
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                metrics.queue_depth.set(len(self._queue))
                self._cond.notify()

    def shut_down(self):
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down
