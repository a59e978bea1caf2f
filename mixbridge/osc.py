"""
Mixer OSC link - UDP transport to a Behringer X-Air / X32 style mixer.

The mixer answers on the source port of whatever it receives, and only pushes
parameter changes to clients that renewed /xremote within the last 10
seconds. MixerLink therefore sends from the same socket it listens on and
renews /xremote every KEEPALIVE_INTERVAL seconds.

Classes:
    - ReusePortBlockingOSCUDPServer: Blocking OSC server with SO_REUSEPORT
    - MixerLink: Send/receive OSC to one mixer, with keep-alive
    - MessageStatistics: Thread-safe message counter with formatted output

Functions:
    - validate_port(port): Validate port in range 1-65535
    - build_message(address, args): Build an OSC datagram from (type, value) pairs
    - message_from_json(data): Parse {"address", "args": [{"type", "value"}]}
    - message_to_json(address, args): Inverse of message_from_json

Constants:
    - MIXER_PORT: Mixer OSC port (10024 on X-Air, 10023 on X32)
    - LOCAL_PORT: Local port the link binds (10023)
    - KEEPALIVE_ADDRESS / KEEPALIVE_INTERVAL: /xremote every 8 s
"""

import socket
import threading
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from pythonosc import dispatcher, osc_server
from pythonosc.osc_message_builder import OscMessageBuilder

from mixbridge.log import get_logger

logger = get_logger(__name__)


# ============================================================================
# CONSTANTS
# ============================================================================

MIXER_PORT = 10024              # X-Air series OSC port
LOCAL_PORT = 10023              # Local bind port (mixer replies here)
DEFAULT_MIXER_ADDRESS = "10.9.9.215"

KEEPALIVE_ADDRESS = "/xremote"  # Subscribes this client to parameter updates
KEEPALIVE_INTERVAL = 8.0        # Mixer drops subscribers after 10 s

# Port validation range
PORT_MIN = 1
PORT_MAX = 65535

# OSC type tags accepted in (type, value) argument pairs
ARG_TYPES = {
    "f": float,
    "i": int,
    "s": str,
}

OscArgs = Sequence[Tuple[str, Any]]


# ============================================================================
# SO_REUSEPORT SERVER
# ============================================================================

class ReusePortBlockingOSCUDPServer(osc_server.BlockingOSCUDPServer):
    """BlockingOSCUDPServer with SO_REUSEPORT socket option enabled.

    Lets a monitoring tool bind the same local port while the bridge runs.
    On systems without SO_REUSEPORT, binding proceeds without it.
    """

    def server_bind(self):
        if hasattr(socket, 'SO_REUSEPORT'):
            self.socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
        self.socket.bind(self.server_address)
        self.server_address = self.socket.getsockname()


# ============================================================================
# MESSAGE HELPERS
# ============================================================================

def validate_port(port: int) -> None:
    """Validate UDP port number is in valid range.

    Raises:
        ValueError: If port is outside range 1-65535

    Examples:
        >>> validate_port(10024)  # OK
        >>> validate_port(0)  # Raises ValueError
    """
    if port < PORT_MIN or port > PORT_MAX:
        raise ValueError(f"Port must be in range {PORT_MIN}-{PORT_MAX}, got {port}")


def build_message(address: str, args: OscArgs = ()):
    """Build an OSC message from (type, value) argument pairs.

    Values are coerced to the declared type, so ("f", 1) is sent as 1.0.

    Raises:
        ValueError: If address does not start with '/' or a type is unknown
    """
    if not address.startswith('/'):
        raise ValueError(f"OSC address must start with '/', got {address!r}")

    builder = OscMessageBuilder(address=address)
    for arg_type, value in args:
        cast = ARG_TYPES.get(arg_type)
        if cast is None:
            raise ValueError(f"Unsupported OSC argument type: {arg_type!r}")
        builder.add_arg(cast(value), arg_type)
    return builder.build()


def message_from_json(data: Dict[str, Any]) -> Tuple[str, List[Tuple[str, Any]]]:
    """Parse the JSON form of a mixer message.

    Format: {"address": "/ch/01/mix/on", "args": [{"type": "i", "value": 1}]}

    Raises:
        ValueError: If address is missing or args are malformed
    """
    if not isinstance(data, dict) or not isinstance(data.get('address'), str):
        raise ValueError(f"Mixer message needs an 'address': {data!r}")

    args = []
    for arg in data.get('args') or []:
        if not isinstance(arg, dict) or 'value' not in arg:
            raise ValueError(f"Malformed OSC argument: {arg!r}")
        args.append((arg.get('type', 'f'), arg['value']))
    return data['address'], args


def message_to_json(address: str, args: OscArgs) -> Dict[str, Any]:
    """JSON form of a mixer message (see message_from_json)."""
    return {
        'address': address,
        'args': [{'type': arg_type, 'value': value} for arg_type, value in args],
    }


# ============================================================================
# MIXER LINK
# ============================================================================

class MixerLink:
    """OSC connection to one mixer.

    Args:
        mixer_address: Mixer IP address
        mixer_port: Mixer OSC port
        local_port: Local UDP port to bind (0 picks a free port)
        on_message: Called as on_message(address, *args) for every inbound message
        on_close: Called once if the receive loop stops without close()
        keepalive_interval: Seconds between /xremote renewals (None disables)
    """

    def __init__(self, mixer_address: str = DEFAULT_MIXER_ADDRESS,
                 mixer_port: int = MIXER_PORT, local_port: int = LOCAL_PORT,
                 on_message: Optional[Callable[..., None]] = None,
                 on_close: Optional[Callable[[], None]] = None,
                 keepalive_interval: Optional[float] = KEEPALIVE_INTERVAL):
        validate_port(mixer_port)
        if local_port != 0:
            validate_port(local_port)

        self.mixer_address = mixer_address
        self.mixer_port = mixer_port
        self.local_port = local_port
        self.on_message = on_message
        self.on_close = on_close
        self.keepalive_interval = keepalive_interval

        self.stats = MessageStatistics()
        self.server: Optional[ReusePortBlockingOSCUDPServer] = None
        self._closing = False
        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []

    @property
    def is_open(self) -> bool:
        return self.server is not None and not self._closing

    @property
    def local_address(self) -> Optional[Tuple[str, int]]:
        return self.server.server_address if self.server else None

    def open(self) -> None:
        """Bind the local port and start receive and keep-alive threads.

        Raises:
            OSError: If the local port cannot be bound
        """
        disp = dispatcher.Dispatcher()
        disp.set_default_handler(self._handle_message)

        self.server = ReusePortBlockingOSCUDPServer(("0.0.0.0", self.local_port), disp)
        self._closing = False
        self._stop_event.clear()

        receive_thread = threading.Thread(target=self._serve, daemon=True)
        receive_thread.start()
        self._threads = [receive_thread]

        logger.info(f"Mixer link on {self.local_address[0]}:{self.local_address[1]} "
                    f"-> {self.mixer_address}:{self.mixer_port}")

        if self.keepalive_interval:
            self.send(KEEPALIVE_ADDRESS)
            keepalive_thread = threading.Thread(target=self._keepalive_loop, daemon=True)
            keepalive_thread.start()
            self._threads.append(keepalive_thread)

    def send(self, address: str, args: OscArgs = ()) -> None:
        """Send one message to the mixer.

        Raises:
            OSError: If the link is not open or the send fails
            ValueError: If the message cannot be encoded
        """
        if not self.is_open:
            raise OSError("Mixer link is not open")

        message = build_message(address, args)
        self.server.socket.sendto(message.dgram, (self.mixer_address, self.mixer_port))
        self.stats.increment('mixer_sent')
        logger.debug(f"-> mixer {address} {list(args)}")

    def send_json(self, data: Dict[str, Any]) -> None:
        """Send a message given in its JSON form (see message_from_json)."""
        address, args = message_from_json(data)
        self.send(address, args)

    def _handle_message(self, address: str, *args):
        self.stats.increment('mixer_received')
        logger.debug(f"<- mixer {address} {list(args)}")
        if self.on_message is None:
            return
        try:
            self.on_message(address, *args)
        except Exception as e:
            logger.error(f"Mixer message handler failed for {address}: {e}")

    def _serve(self):
        try:
            self.server.serve_forever()
        except Exception as e:
            logger.error(f"Mixer receive loop failed: {e}")
        finally:
            if not self._closing:
                logger.error("Mixer link closed unexpectedly")
                self._stop_event.set()
                if self.on_close is not None:
                    self.on_close()

    def _keepalive_loop(self):
        while not self._stop_event.wait(self.keepalive_interval):
            try:
                self.send(KEEPALIVE_ADDRESS)
            except OSError as e:
                logger.warning(f"Keep-alive to mixer failed: {e}")

    def close(self) -> None:
        """Stop threads and release the socket."""
        if self.server is None:
            return
        self._closing = True
        self._stop_event.set()
        self.server.shutdown()
        self.server.server_close()
        for thread in self._threads:
            thread.join(timeout=1.0)
        self._threads = []
        self.server = None


# ============================================================================
# MESSAGE STATISTICS
# ============================================================================

class MessageStatistics:
    """Thread-safe message statistics tracker with formatted output.

    Typical counters:
        - midi_events: Control surface messages received
        - coalesced_events: CC messages superseded inside a debounce window
        - mixer_sent / mixer_received: OSC traffic
        - bus_published: Message bus publications
        - lookup_misses: Events with no mapping
        - failed_actions: Outbound actions that raised

    Examples:
        >>> stats = MessageStatistics()
        >>> stats.increment('midi_events')
        >>> stats.print_stats("BRIDGE")
    """

    def __init__(self):
        self.counters = {}
        self.lock = threading.Lock()

    def increment(self, counter_name: str, amount: int = 1) -> None:
        """Increment a counter by specified amount (thread-safe)."""
        with self.lock:
            self.counters[counter_name] = self.counters.get(counter_name, 0) + amount

    def get(self, counter_name: str) -> int:
        """Current value of a counter, or 0 if it doesn't exist."""
        with self.lock:
            return self.counters.get(counter_name, 0)

    def merge(self, other: "MessageStatistics") -> None:
        """Add another tracker's counters into this one."""
        with other.lock:
            snapshot = dict(other.counters)
        for name, value in snapshot.items():
            self.increment(name, value)

    def print_stats(self, title: str = "STATISTICS") -> None:
        """Print counters in sorted order between separator lines."""
        print("\n" + "=" * 60)
        print(title)
        print("=" * 60)

        # Snapshot counters under lock (fast)
        with self.lock:
            snapshot = dict(self.counters)

        # Print without holding lock (slow I/O)
        for name in sorted(snapshot.keys()):
            display_name = name.replace('_', ' ').title()
            print(f"{display_name}: {snapshot[name]}")

        print("=" * 60)
