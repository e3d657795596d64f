"""
Network reachability tracking with a debounced "stable online" signal.

Transitions come either from set_online() (platform notifications) or from the
optional background probe. BECAME_ONLINE starts a debounce timer; STABLE_ONLINE
is published only if the till is still online when it fires, so a short flap
never starts a drain.
"""
import logging
import queue
import threading
from typing import Callable, Iterator, List, Optional

import requests

from till_config import DEBOUNCE_SECONDS, PROBE_INTERVAL, PROBE_TIMEOUT
from till_models import ConnectivityEvent

logger = logging.getLogger(__name__)


def http_probe(url: str, timeout: float = PROBE_TIMEOUT) -> Callable[[], bool]:
    """Build a probe that treats any HTTP answer from url as reachable."""
    def _probe() -> bool:
        try:
            requests.get(url, timeout=timeout)
            return True
        except requests.RequestException:
            return False
    return _probe


class ConnectivityMonitor:
    def __init__(self, initial_online: bool = False, debounce_seconds: float = DEBOUNCE_SECONDS,
                 probe: Optional[Callable[[], bool]] = None, poll_interval: float = PROBE_INTERVAL):
        self._online = bool(initial_online)
        self.debounce_seconds = debounce_seconds
        self.probe = probe
        self.poll_interval = poll_interval
        self._subscribers: List[Callable[[ConnectivityEvent], None]] = []
        self._lock = threading.RLock()
        self._timer: Optional[threading.Timer] = None
        # bumped on every edge; a timer from an older generation never fires stable-online
        self._generation = 0
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_online(self) -> bool:
        with self._lock:
            return self._online

    def subscribe(self, callback: Callable[[ConnectivityEvent], None]) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe():
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)
        return _unsubscribe

    def events(self) -> Iterator[ConnectivityEvent]:
        """Infinite stream of edges seen after the first next() call."""
        inbox: "queue.Queue[ConnectivityEvent]" = queue.Queue()
        unsubscribe = self.subscribe(inbox.put)
        try:
            while True:
                yield inbox.get()
        finally:
            unsubscribe()

    def _publish(self, event: ConnectivityEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception("Connectivity subscriber failed on %s", event.value)

    def set_online(self, online: bool) -> None:
        online = bool(online)
        with self._lock:
            if online == self._online:
                return
            self._online = online
            self._generation += 1
            self._cancel_timer()
            timer = self._arm_stable_timer() if online else None
        if online:
            logger.info("Connectivity: online")
            self._publish(ConnectivityEvent.BECAME_ONLINE)
            if timer is None:
                self._fire_stable()
            else:
                timer.start()
        else:
            logger.info("Connectivity: offline")
            self._publish(ConnectivityEvent.BECAME_OFFLINE)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
            logger.debug("Connectivity flap inside debounce window; stable-online suppressed")

    def _arm_stable_timer(self) -> Optional[threading.Timer]:
        """Create (not start) the debounce timer for the current generation; caller holds the lock."""
        if self.debounce_seconds <= 0:
            return None
        timer = threading.Timer(self.debounce_seconds, self._fire_stable, args=(self._generation,))
        timer.daemon = True
        self._timer = timer
        return timer

    def _fire_stable(self, generation: Optional[int] = None) -> None:
        with self._lock:
            if generation is not None and generation != self._generation:
                return
            self._timer = None
            if not self._online:
                return
        logger.info("Connectivity stable for %.1fs", self.debounce_seconds)
        self._publish(ConnectivityEvent.STABLE_ONLINE)

    def check_now(self) -> bool:
        """Run the probe once and apply its result."""
        if self.probe is None:
            return self.is_online
        try:
            reachable = bool(self.probe())
        except Exception:
            logger.exception("Connectivity probe raised")
            reachable = False
        self.set_online(reachable)
        return reachable

    def start(self) -> None:
        if self.probe is None:
            return
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._poll_loop, name='connectivity-probe', daemon=True)
        self._thread.start()
        logger.info("Connectivity probe started (interval=%ss)", self.poll_interval)

    def _poll_loop(self) -> None:
        while not self._stop.is_set():
            self.check_now()
            self._stop.wait(self.poll_interval)

    def stop(self) -> None:
        self._stop.set()
        with self._lock:
            self._generation += 1
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=self.poll_interval + 1)
        self._thread = None
