"""
Value conversion - MIDI raw values to mixer parameter values.

Converters turn a raw 0-127 control value into the value sent to the mixer.
Float targets are scaled against a per-address ceiling ("max") that a second
fine-adjustment control can move between 0.75 and 1.0, so one physical knob
defines the usable range of a fader.

Classes:
    - PathState: Mutable per-address state (last raw value, adaptive max)
    - PathStateStore: Owned map of address -> PathState
    - FloatConverter: raw / 127 * max (stateful)
    - FineMaxConverter: Adjusts the max of a primary address (stateful)
    - BoolConverter: Non-zero -> true literal, zero -> false literal
    - ConstantConverter: Always returns the same value

Functions:
    - is_absent(value): True for None and NaN ("no value")
    - scale(raw, ceiling): raw / MIDI_MAX * ceiling
"""

import math
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional

# ============================================================================
# CONSTANTS
# ============================================================================

MIDI_MAX = 127           # Highest 7-bit MIDI data value
DEFAULT_MAX = 0.75       # Fader ceiling until a fine control moves it (0 dB on X-Air)
FINE_RANGE = 0.25        # Fine control spans DEFAULT_MAX .. DEFAULT_MAX + FINE_RANGE

# OSC argument type tags used by the mixer
TYPE_FLOAT = "f"
TYPE_INT = "i"


def is_absent(value: Any) -> bool:
    """Return True when value carries no usable number.

    Missing (None) and NaN are both "no value". Zero is a value.

    Examples:
        >>> is_absent(None)
        True
        >>> is_absent(float("nan"))
        True
        >>> is_absent(0)
        False
    """
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    return False


def scale(raw: float, ceiling: float) -> float:
    """Scale a raw MIDI value into 0..ceiling."""
    return raw / float(MIDI_MAX) * ceiling


# ============================================================================
# PATH STATE
# ============================================================================

@dataclass
class PathState:
    """Adaptive state for one mixer address.

    Attributes:
        current: Last raw MIDI value seen for the address (None until moved)
        max: Ceiling used by float conversion (0.75-1.0)
    """
    current: Optional[int] = None
    max: float = DEFAULT_MAX


class PathStateStore:
    """Owned store of PathState keyed by mixer address.

    At most one PathState exists per address; entries are created lazily
    and live for the process lifetime.
    """

    def __init__(self):
        self._states: Dict[str, PathState] = {}
        self._lock = threading.Lock()

    def get(self, address: str) -> PathState:
        """Return the state for address, creating it on first use."""
        with self._lock:
            state = self._states.get(address)
            if state is None:
                state = PathState()
                self._states[address] = state
            return state

    def peek(self, address: str) -> Optional[PathState]:
        """Return the state for address without creating it."""
        with self._lock:
            return self._states.get(address)

    def seed(self, address: str, current: Optional[int]) -> None:
        """Set the last known raw value (used when restoring a snapshot)."""
        if is_absent(current):
            return
        self.get(address).current = int(current)

    def addresses(self):
        with self._lock:
            return sorted(self._states)

    def __len__(self) -> int:
        with self._lock:
            return len(self._states)


# ============================================================================
# CONVERTERS
# ============================================================================

class ValueConverter:
    """Base converter.

    Subclasses implement convert(raw, address, store). Stateless converters
    ignore address and store.
    """

    stateful = False
    name = "raw"

    def convert(self, raw: Any, address: str, store: PathStateStore) -> Any:
        return raw


class FloatConverter(ValueConverter):
    """Scale raw 0-127 into 0..max, remembering the raw value.

    Args:
        fixed_max: Use this ceiling instead of the address' adaptive max
    """

    stateful = True
    name = "float"

    def __init__(self, fixed_max: Optional[float] = None):
        self.fixed_max = fixed_max

    def convert(self, raw, address, store):
        state = store.get(address)
        state.current = int(raw)
        ceiling = self.fixed_max if self.fixed_max is not None else state.max
        return scale(raw, ceiling)

    def __repr__(self):
        return f"FloatConverter(fixed_max={self.fixed_max})"


class FineMaxConverter(ValueConverter):
    """Move the ceiling of a primary address and re-emit its value.

    The new ceiling is DEFAULT_MAX + raw/127 * FINE_RANGE. The returned value
    is the primary control's last raw value rescaled with that ceiling, or the
    fine control's own raw value when the primary has not moved yet. The
    primary's current value is left untouched.
    """

    stateful = True
    name = "fine_max"

    def convert(self, raw, address, store):
        state = store.get(address)
        state.max = DEFAULT_MAX + scale(raw, FINE_RANGE)
        source = raw if is_absent(state.current) else state.current
        return scale(source, state.max)

    def __repr__(self):
        return "FineMaxConverter()"


class BoolConverter(ValueConverter):
    """Map non-zero input to true_value and zero to false_value.

    Args:
        true_value: Output for a non-zero input (default 1)
        false_value: Output for zero input (default 0)
        invert: Swap the two outputs
    """

    name = "bool"

    def __init__(self, true_value: Any = 1, false_value: Any = 0, invert: bool = False):
        self.true_value = true_value
        self.false_value = false_value
        self.invert = invert

    def is_on(self, raw: Any) -> bool:
        on = not is_absent(raw) and float(raw) != 0
        return on != self.invert

    def convert(self, raw, address=None, store=None):
        return self.true_value if self.is_on(raw) else self.false_value

    def __repr__(self):
        return (f"BoolConverter(true_value={self.true_value!r}, "
                f"false_value={self.false_value!r}, invert={self.invert})")


class ConstantConverter(ValueConverter):
    """Ignore the input and always return value.

    Used where feedback color must not follow toggle state.
    """

    name = "constant"

    def __init__(self, value: Any):
        self.value = value

    def convert(self, raw, address=None, store=None):
        return self.value

    def __repr__(self):
        return f"ConstantConverter({self.value!r})"
