# Purpose: the two scheduling primitives the pipeline runs on
# - SerialQueue: one worker thread, jobs run strictly one after another (FIFO)
#   plus delayed jobs (submit_after) that land on the same worker
# - RepeatingTimer: one thread ticking at an interval that is re-read every tick

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Optional, Set

from loguru import logger


class SerialQueue:
    """
    Serial background queue
    Anything submitted here never overlaps with anything else submitted here
    """

    def __init__(self, name: str):
        self.name = name
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=name)
        self._timers: Set[threading.Timer] = set()
        self._lock = threading.Lock()
        self._closed = False

    def submit(self, fn: Callable, *args, **kwargs) -> Future:
        with self._lock:
            if self._closed:
                future = Future()
                future.cancel()
                return future
            return self._executor.submit(self._run, fn, *args, **kwargs)

    def _run(self, fn: Callable, *args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except Exception as e:
            logger.exception(f"[QUEUE] Job on {self.name} failed: {e}")
            raise

    def submit_after(self, delay: float, fn: Callable, *args, **kwargs) -> threading.Timer:
        """Run fn on this queue after `delay` seconds. Fire and forget"""

        def fire():
            with self._lock:
                self._timers.discard(timer)
            self.submit(fn, *args, **kwargs)

        timer = threading.Timer(delay, fire)
        timer.daemon = True
        with self._lock:
            if self._closed:
                return timer
            self._timers.add(timer)
        timer.start()
        return timer

    def shutdown(self, wait: bool = True):
        with self._lock:
            self._closed = True
            timers = list(self._timers)
            self._timers.clear()

        for timer in timers:
            timer.cancel()
        self._executor.shutdown(wait=wait)


class RepeatingTimer:
    """
    Calls `tick` every interval_fn() seconds on a single thread
    Ticks never overlap: the next wait only starts after the previous tick returned
    interval_fn is read before each wait, so interval changes apply without a restart
    """

    def __init__(self, name: str, interval_fn: Callable[[], float], tick: Callable[[], None]):
        self.name = name
        self._interval_fn = interval_fn
        self._tick = tick
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True, name=self.name)
        self._thread.start()

    def stop(self, timeout: float = 2.0):
        self._stop.set()
        thread = self._thread
        self._thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)

    def _loop(self):
        while not self._stop.wait(self._interval_fn()):
            try:
                self._tick()
            except Exception as e:
                logger.exception(f"[TIMER] {self.name} tick failed: {e}")
