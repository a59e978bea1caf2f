"""
MIDI device registry - logical device names to open mido ports.

Logical names are prefixes of the port names reported by the MIDI backend
(ALSA appends client/port numbers, e.g. "LPD8:LPD8 MIDI 1 20:0"), so the
mapping file can say "LPD8". The first port whose name starts with the
logical name is opened and cached for the rest of the process. Cached ports
are never re-resolved; an unplugged device shows up as a send error.
"""

import threading
import time
from typing import Callable, Dict, List, Optional, Tuple

import mido

from mixbridge.log import get_logger

logger = get_logger(__name__)

# Poll interval of the MIDI input loop (seconds)
POLL_INTERVAL = 0.01


def find_port_name(port_names: List[str], logical_name: str) -> Optional[str]:
    """Return the first port name starting with logical_name, or None.

    Examples:
        >>> find_port_name(["LPD8:LPD8 MIDI 1 20:0"], "LPD8")
        'LPD8:LPD8 MIDI 1 20:0'
        >>> find_port_name(["LPD8:LPD8 MIDI 1 20:0"], "nanoKONTROL") is None
        True
    """
    for name in port_names:
        if name.startswith(logical_name):
            return name
    return None


class DeviceRegistry:
    """Resolves and caches MIDI input/output ports by logical name.

    Resolution never raises: a missing device or a failed open is logged and
    reported as None. Only successful resolutions are cached.

    Args:
        default_output: Logical name used when a feedback step names no
            device or its device is unavailable
    """

    def __init__(self, default_output: Optional[str] = None):
        self.default_output = default_output
        self._inputs: Dict[str, mido.ports.BaseInput] = {}
        self._outputs: Dict[str, mido.ports.BaseOutput] = {}
        self._lock = threading.Lock()

    def resolve_input(self, logical_name: str) -> Optional[mido.ports.BaseInput]:
        """Open (once) the input port for logical_name."""
        return self._resolve(logical_name, self._inputs,
                             mido.get_input_names, mido.open_input, "input")

    def resolve_output(self, logical_name: str) -> Optional[mido.ports.BaseOutput]:
        """Open (once) the output port for logical_name."""
        return self._resolve(logical_name, self._outputs,
                             mido.get_output_names, mido.open_output, "output")

    def _resolve(self, logical_name, cache, list_ports, open_port, kind):
        if not logical_name:
            return None

        with self._lock:
            port = cache.get(logical_name)
            if port is not None:
                logger.debug(f"Resolved MIDI {kind} '{logical_name}' from cache")
                return port

            try:
                port_name = find_port_name(list_ports(), logical_name)
            except Exception as e:
                logger.warning(f"Unable to list MIDI {kind} ports: {e}")
                return None

            if port_name is None:
                logger.warning(f"MIDI {kind} device not found: '{logical_name}'")
                return None

            try:
                port = open_port(port_name)
            except Exception as e:
                logger.warning(f"Unable to open MIDI {kind} '{port_name}': {e}")
                return None

            cache[logical_name] = port
            logger.info(f"Opened MIDI {kind} '{port_name}' for '{logical_name}'")
            return port

    def output_for(self, logical_name: Optional[str]) -> Optional[mido.ports.BaseOutput]:
        """Output port for logical_name, falling back to the default output.

        Returns None (after a warning) when neither can be resolved; the
        caller drops the action.
        """
        port = self.resolve_output(logical_name) if logical_name else None
        if port is not None:
            return port

        if self.default_output and self.default_output != logical_name:
            if logical_name:
                logger.info(f"Falling back to default MIDI output '{self.default_output}'")
            port = self.resolve_output(self.default_output)
            if port is not None:
                return port

        logger.warning(f"No MIDI output available for '{logical_name or 'default'}', dropping")
        return None

    def cached_inputs(self) -> Dict[str, mido.ports.BaseInput]:
        with self._lock:
            return dict(self._inputs)

    def list_devices(self) -> Tuple[List[str], List[str]]:
        """Return (input port names, output port names) currently present."""
        return mido.get_input_names(), mido.get_output_names()

    def close_all(self) -> None:
        """Close every cached port."""
        with self._lock:
            ports = list(self._inputs.values()) + list(self._outputs.values())
            self._inputs.clear()
            self._outputs.clear()

        for port in ports:
            try:
                port.close()
            except Exception as e:
                logger.warning(f"Error closing MIDI port {getattr(port, 'name', port)}: {e}")


# ============================================================================
# MIDI MESSAGES
# ============================================================================

def clamp_data(value) -> int:
    """Clamp a value into the 7-bit MIDI data range."""
    return max(0, min(127, int(value)))


def feedback_message(message_type: str, number: int, value, channel: int = 0) -> mido.Message:
    """Build an outbound feedback message.

    number is the note or controller; value becomes velocity or CC value.
    Program change sends value as the program number.

    Raises:
        ValueError: For message types that carry no feedback value
    """
    if message_type in ('note_on', 'note_off'):
        return mido.Message(message_type, note=number, velocity=clamp_data(value), channel=channel)
    if message_type == 'control_change':
        return mido.Message(message_type, control=number, value=clamp_data(value), channel=channel)
    if message_type == 'program_change':
        return mido.Message(message_type, program=clamp_data(value), channel=channel)
    raise ValueError(f"Unsupported feedback message type: {message_type}")


def midi_to_json(device: str, msg: mido.Message) -> dict:
    """JSON-safe form of an inbound message, tagged with its device."""
    data = msg.dict()
    data.pop('time', None)
    data['device'] = device
    return data


def midi_from_json(data: dict) -> mido.Message:
    """Inverse of midi_to_json (the device tag is dropped).

    Raises:
        ValueError: If the dict is not a valid mido message
    """
    if not isinstance(data, dict):
        raise ValueError(f"Invalid MIDI message {data!r}: expected an object")
    fields = {key: value for key, value in data.items() if key not in ('device', 'time')}
    try:
        return mido.Message.from_dict(fields)
    except (KeyError, TypeError, AttributeError) as e:
        raise ValueError(f"Invalid MIDI message {data!r}: {e}") from e


# ============================================================================
# INPUT POLLING
# ============================================================================

class MidiInputPoller:
    """Polls open input ports and hands messages to a callback.

    Runs one daemon thread using non-blocking iter_pending() so shutdown is
    responsive.

    Args:
        ports: Logical name -> open input port
        callback: Called as callback(logical_name, message)
    """

    def __init__(self, ports: Dict[str, mido.ports.BaseInput],
                 callback: Callable[[str, mido.Message], None]):
        self.ports = dict(ports)
        self.callback = callback
        self.running = False
        self._thread: Optional[threading.Thread] = None

    def start(self):
        self.running = True
        self._thread = threading.Thread(target=self._poll_loop, daemon=True)
        self._thread.start()

    def stop(self):
        self.running = False
        if self._thread is not None:
            self._thread.join(timeout=1.0)
            self._thread = None

    def poll_once(self) -> int:
        """Deliver all pending messages once; returns how many were delivered."""
        delivered = 0
        for logical_name, port in self.ports.items():
            for msg in port.iter_pending():
                if not self.running:
                    return delivered
                try:
                    self.callback(logical_name, msg)
                except Exception as e:
                    logger.error(f"MIDI handler failed for {msg}: {e}")
                delivered += 1
        return delivered

    def _poll_loop(self):
        logger.info(f"MIDI input thread started ({', '.join(self.ports)})")

        while self.running:
            self.poll_once()
            time.sleep(POLL_INTERVAL)

        logger.info("MIDI input thread exiting")
