"""
Debounce coalescer - collapse bursts of events per key into one delayed call.

A fader swept by hand emits dozens of CC messages per second. Each
schedule() for a key cancels that key's pending timer and starts a new one,
so the handler runs once per quiet period with the last payload only.

Example:
    >>> coalescer = DebounceCoalescer(lambda key, payload: print(key, payload))
    >>> for value in (10, 40, 64):
    ...     coalescer.schedule(("WORLDE", 3), 20, value)
    # ~20 ms later: ('WORLDE', 3) 64
"""

import threading
from typing import Any, Callable, Dict, Hashable, Optional, Tuple

from mixbridge.log import get_logger

logger = get_logger(__name__)


class DebounceCoalescer:
    """Per-key trailing-edge debounce on threading.Timer.

    Args:
        handler: Called as handler(key, payload) when a key goes quiet
        timer_factory: Timer constructor, (seconds, function, args) -> timer
            with start()/cancel(); threading.Timer by default
    """

    def __init__(self, handler: Callable[[Hashable, Any], None],
                 timer_factory: Callable = threading.Timer):
        self.handler = handler
        self.timer_factory = timer_factory
        # key -> (timer, token); the token identifies the live timer for a key
        self._timers: Dict[Hashable, Tuple[Any, object]] = {}
        self._payloads: Dict[Hashable, Any] = {}
        self._lock = threading.Lock()

    def schedule(self, key: Hashable, delay_ms: float, payload: Any) -> None:
        """(Re)start the timer for key; payload replaces any pending one."""
        with self._lock:
            previous = self._timers.pop(key, None)
            if previous is not None:
                previous[0].cancel()

            token = object()
            timer = self.timer_factory(delay_ms / 1000.0, self._fire, (key, token))
            timer.daemon = True
            self._timers[key] = (timer, token)
            self._payloads[key] = payload
            timer.start()

    def _fire(self, key: Hashable, token: object) -> None:
        with self._lock:
            live = self._timers.get(key)
            if live is None or live[1] is not token:
                # Cancelled or replaced after the timer thread had already woken
                return
            del self._timers[key]
            payload = self._payloads.pop(key)

        try:
            self.handler(key, payload)
        except Exception as e:
            logger.error(f"Debounced handler failed for {key}: {e}")

    def cancel(self, key: Hashable) -> bool:
        """Cancel the pending call for key. Returns True if one was pending."""
        with self._lock:
            entry = self._timers.pop(key, None)
            self._payloads.pop(key, None)
        if entry is None:
            return False
        entry[0].cancel()
        return True

    def cancel_all(self) -> int:
        """Cancel every pending call (shutdown). Returns how many were pending."""
        with self._lock:
            timers = [timer for timer, _ in self._timers.values()]
            self._timers.clear()
            self._payloads.clear()
        for timer in timers:
            timer.cancel()
        return len(timers)

    def pending(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._timers

    def pending_payload(self, key: Hashable) -> Optional[Any]:
        with self._lock:
            return self._payloads.get(key)

    def __len__(self) -> int:
        with self._lock:
            return len(self._timers)
