"""
Snapshot persistence - last known state per mixer address.

Every control change records the OSC message sent to the mixer and the raw
MIDI message that caused it. The file is rewritten at most once per
WRITE_DELAY seconds (trailing debounce), atomically via temp file + rename.
On startup the snapshot is replayed so mixer and control surfaces pick up
where they left off.

State file format:
    {
        "version": 1,
        "entries": {
            "/ch/01/mix/fader": {
                "osc": {"address": "/ch/01/mix/fader", "args": [{"type": "f", "value": 0.378}]},
                "midi": {"device": "WORLDE easy CTRL", "type": "control_change",
                         "channel": 0, "control": 3, "value": 64}
            }
        },
        "timestamp": 1234567890.123
    }
"""

import json
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from mixbridge.debounce import DebounceCoalescer
from mixbridge.log import get_logger

logger = get_logger(__name__)

STATE_VERSION = 1  # State file format version for future migrations
WRITE_DELAY = 1.0  # Seconds of quiet before the file is written
DEFAULT_STATE_PATH = "state_data.json"

_WRITE_KEY = "snapshot"


class SnapshotStore:
    """Trailing-debounced JSON snapshot of address -> {osc, midi}.

    Args:
        path: State file path
        delay: Seconds of quiet before writing (default WRITE_DELAY)
        timer_factory: Timer constructor passed to the coalescer
    """

    def __init__(self, path=DEFAULT_STATE_PATH, delay: float = WRITE_DELAY,
                 timer_factory: Callable = threading.Timer):
        self.path = Path(path)
        self.delay = delay
        self._entries: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()
        self._writer = DebounceCoalescer(lambda key, payload: self.save(), timer_factory)

    def record(self, address: str, osc: Dict[str, Any], midi: Optional[Dict[str, Any]]) -> None:
        """Remember the last outbound/inbound pair for address and schedule a write."""
        with self._lock:
            self._entries[address] = {'osc': osc, 'midi': midi}
        self._writer.schedule(_WRITE_KEY, self.delay * 1000.0, None)

    def entries(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {address: dict(entry) for address, entry in self._entries.items()}

    def save(self) -> bool:
        """Write the snapshot now. Returns False (after a warning) on failure."""
        state = {
            'version': STATE_VERSION,
            'entries': self.entries(),
            'timestamp': time.time(),
        }

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            # Atomic write: write to temp file, then rename
            temp_path = self.path.with_suffix(self.path.suffix + '.tmp')
            with open(temp_path, 'w') as f:
                json.dump(state, f, indent=2)
            temp_path.replace(self.path)
        except (OSError, TypeError, ValueError) as e:
            logger.warning(f"Error saving state to '{self.path}': {e}")
            return False

        logger.debug(f"Saved {len(state['entries'])} entries to {self.path}")
        return True

    def flush(self) -> None:
        """Write immediately if a write is pending (shutdown)."""
        if self._writer.cancel(_WRITE_KEY):
            self.save()

    def load(self) -> Dict[str, Dict[str, Any]]:
        """Read the snapshot from disk and adopt it as the current entries.

        A missing, unreadable or wrong-version file yields an empty snapshot.
        """
        if not self.path.exists():
            logger.info(f"No state file at {self.path}, starting fresh")
            return {}

        try:
            with open(self.path, 'r') as f:
                state = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to load state from '{self.path}': {e}")
            return {}

        if not isinstance(state, dict) or state.get('version') != STATE_VERSION:
            logger.warning(f"State file version {state.get('version') if isinstance(state, dict) else None} "
                           f"!= expected {STATE_VERSION}, ignoring")
            return {}

        entries = state.get('entries') or {}
        if not isinstance(entries, dict):
            logger.warning(f"Invalid entries in state file, ignoring")
            return {}

        with self._lock:
            self._entries = {address: entry for address, entry in entries.items()
                             if isinstance(entry, dict)}

        timestamp = state.get('timestamp', 0)
        logger.info(f"Reading state from {self.path} ({len(self._entries)} entries)")
        logger.info(f"  State timestamp: {time.strftime('%Y-%m-%d %H:%M:%S', time.localtime(timestamp))}")
        return self.entries()
