"""
Blink scheduler - periodic on/off alternation for indicator LEDs.

One driver thread ticks every BLINK_INTERVAL seconds and flips a global
phase; every registration is called with its on value in one phase and its
off value in the other, so all blinking LEDs stay in step.

Registrations are keyed by id (one per physical indicator). Registering an
id replaces whatever was registered for it before. Registering with the off
value (or no value) turns the LED off once and registers nothing.

A callback that raises is dropped; the driver and the other registrations
keep running.
"""

import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Hashable, List, Optional

from mixbridge.log import get_logger
from mixbridge.values import is_absent

logger = get_logger(__name__)

BLINK_INTERVAL = 0.666  # seconds per phase


@dataclass
class BlinkRegistration:
    callback: Callable[[Any], None]
    value: Any
    off_value: Any


class BlinkScheduler:
    """Drives all blinking indicators from one periodic thread.

    Args:
        interval: Seconds between ticks (default BLINK_INTERVAL)
    """

    def __init__(self, interval: float = BLINK_INTERVAL):
        self.interval = interval
        self.phase = False
        self._registrations: Dict[Hashable, BlinkRegistration] = {}
        self._lock = threading.Lock()
        # Held while any callback sends, so a replaced registration never
        # sends after its replacement
        self._send_lock = threading.RLock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def register(self, blink_id: Hashable, callback: Callable[[Any], None],
                 value: Any, off_value: Any) -> bool:
        """Start blinking blink_id between value and off_value.

        Any previous registration for blink_id is removed first. When value
        equals off_value or is absent, callback(off_value) is called once and
        nothing is registered.

        Returns:
            True if a repeating registration was stored
        """
        with self._send_lock:
            with self._lock:
                self._registrations.pop(blink_id, None)
                steady_off = is_absent(value) or value == off_value
                if not steady_off:
                    self._registrations[blink_id] = BlinkRegistration(callback, value, off_value)

            if steady_off:
                callback(off_value)
                return False
            return True

    def unregister(self, blink_id: Hashable) -> bool:
        """Stop blinking blink_id. Returns True if it was registered.

        No callback of the removed registration runs after this returns.
        """
        with self._send_lock, self._lock:
            return self._registrations.pop(blink_id, None) is not None

    def is_registered(self, blink_id: Hashable) -> bool:
        with self._lock:
            return blink_id in self._registrations

    def active_ids(self) -> List[Hashable]:
        with self._lock:
            return list(self._registrations)

    def tick(self) -> None:
        """Flip the phase and call every registration once.

        Callbacks run outside the registry lock, so a callback may register
        or unregister ids. A registration replaced or removed during the tick
        is skipped.
        """
        with self._lock:
            self.phase = not self.phase
            phase = self.phase
            snapshot = list(self._registrations.items())

        for blink_id, registration in snapshot:
            output = registration.value if phase else registration.off_value
            with self._send_lock:
                with self._lock:
                    if self._registrations.get(blink_id) is not registration:
                        continue
                try:
                    registration.callback(output)
                except Exception as e:
                    logger.warning(f"Blink callback for {blink_id} failed, removing: {e}")
                    with self._lock:
                        # Only drop it if it was not replaced meanwhile
                        if self._registrations.get(blink_id) is registration:
                            del self._registrations[blink_id]

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()
        logger.info(f"Blink driver started ({self.interval * 1000:.0f} ms)")

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=self.interval * 2)
            self._thread = None

    def _run(self):
        while not self._stop_event.wait(self.interval):
            try:
                self.tick()
            except Exception as e:
                logger.error(f"Blink tick failed: {e}")
