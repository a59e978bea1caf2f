"""Integration test utilities.

Provides a fake mixer endpoint that records every OSC datagram it receives
and can answer back to the sender, the way an X-Air mixer replies to the
source port of /xremote subscribers.
"""

import threading
import time
from collections import deque

from pythonosc import dispatcher

from mixbridge import osc
from mixbridge.osc import build_message


class OSCMessageCapture:
    """Captures OSC messages sent to a local UDP port.

    Binds port 0 by default so parallel test runs never collide; the bound
    port is available as .port after start().

    Example:
        capture = OSCMessageCapture()
        capture.start()
        link = MixerLink("127.0.0.1", capture.port, local_port=0)
        ...
        ts, addr, args = capture.wait_for_message("/ch/01/mix/fader", timeout=2.0)
        capture.stop()
    """

    def __init__(self, port: int = 0):
        self.port = port
        self.messages = deque(maxlen=1000)  # Prevent unbounded growth
        self.senders = deque(maxlen=1000)
        self.lock = threading.Lock()
        self.server = None
        self.server_thread = None

    def start(self):
        """Start capture server in background thread."""
        disp = dispatcher.Dispatcher()
        disp.set_default_handler(self._capture_handler, needs_reply_address=True)

        self.server = osc.ReusePortBlockingOSCUDPServer(("127.0.0.1", self.port), disp)
        self.port = self.server.server_address[1]

        self.server_thread = threading.Thread(target=self.server.serve_forever)
        self.server_thread.daemon = True
        self.server_thread.start()
        time.sleep(0.05)  # Allow server to start

    def _capture_handler(self, client_address, address, *args):
        with self.lock:
            self.messages.append((time.time(), address, args))
            self.senders.append(client_address)

    def wait_for_message(self, address_pattern: str, timeout: float = 5.0):
        """Wait for message matching address prefix within timeout.

        Raises:
            TimeoutError: If no matching message received within timeout
        """
        start = time.time()
        while time.time() - start < timeout:
            with self.lock:
                for ts, addr, args in self.messages:
                    if addr.startswith(address_pattern):
                        return (ts, addr, args)
            time.sleep(0.02)
        raise TimeoutError(f"No message matching {address_pattern} within {timeout}s")

    def get_messages_by_address(self, address_pattern: str):
        with self.lock:
            return [(ts, addr, args) for ts, addr, args in self.messages
                    if addr.startswith(address_pattern)]

    def reply(self, address: str, args=()):
        """Send a message back to the most recent sender (mixer push)."""
        with self.lock:
            target = self.senders[-1]
        self.server.socket.sendto(build_message(address, args).dgram, target)

    def clear(self):
        with self.lock:
            self.messages.clear()

    def stop(self):
        if self.server:
            self.server.shutdown()
            self.server.server_close()
            self.server = None
