# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Time sources for the orchestrator.

``WallClock`` fires callbacks on timer threads and runs blocking work (health
probes) in a worker pool with a timeout. ``ManualClock`` is a simulated
timeline: nothing happens until it is advanced, callbacks then fire in time
order on the caller's thread.
"""
import heapq
import itertools
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Any, Callable, List, Optional, Tuple


class TimerHandle:
    """A scheduled callback that can be cancelled before it fires."""

    def __init__(self, due: float, callback: Callable[[], None]):
        self.due = due
        self.callback = callback
        self.cancelled = False
        self._timer: Optional[threading.Timer] = None

    def cancel(self) -> None:
        self.cancelled = True
        if self._timer is not None:
            self._timer.cancel()

    def _fire(self) -> None:
        if not self.cancelled:
            self.callback()


class WallClock:
    """
    Real time. Each scheduled callback runs on its own timer thread, so
    callbacks for different services never wait on each other.
    """

    def __init__(self, workers: int = 8):
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="probe")

    def now(self) -> float:
        return time.monotonic()

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        handle = TimerHandle(self.now() + delay, callback)
        timer = threading.Timer(max(delay, 0.0), handle._fire)
        timer.daemon = True
        handle._timer = timer
        timer.start()
        return handle

    def run_with_timeout(self, fn: Callable[[], Any], timeout: float) -> Any:
        """
        Runs ``fn`` in the worker pool and waits at most ``timeout`` seconds.

        :raises TimeoutError: If ``fn`` has not returned in time.
        """
        future = self._executor.submit(fn)
        try:
            return future.result(timeout=timeout)
        except FutureTimeout:
            future.cancel()
            raise TimeoutError(f"timed out after {timeout}s")

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False)


class ManualClock:
    """
    Simulated time for deterministic runs. ``advance`` moves time forward and
    fires every callback that falls due, in order, on the calling thread.
    """

    def __init__(self, start: float = 0.0):
        self._now = start
        self._queue: List[Tuple[float, int, TimerHandle]] = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._now

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        handle = TimerHandle(self._now + max(delay, 0.0), callback)
        heapq.heappush(self._queue, (handle.due, next(self._seq), handle))
        return handle

    def run_with_timeout(self, fn: Callable[[], Any], timeout: float) -> Any:
        # Inline: a simulated probe signals a timeout by raising TimeoutError.
        return fn()

    def advance(self, seconds: float) -> None:
        self.advance_to(self._now + seconds)

    def advance_to(self, target: float) -> None:
        while self._queue and self._queue[0][0] <= target:
            due, _, handle = heapq.heappop(self._queue)
            self._now = max(self._now, due)
            handle._fire()
        self._now = max(self._now, target)

    def pending(self) -> int:
        return sum(1 for _, _, h in self._queue if not h.cancelled)

    def shutdown(self) -> None:
        self._queue.clear()
