#!/usr/bin/env python3
"""
mixbridge - MIDI control surfaces <-> mixer OSC <-> MQTT.

Wires the components together and runs until SIGINT/SIGTERM or until the
mixer link dies:

    MIDI input poller --> MessageRouter --> MixerLink (OSC/UDP)
                              |   ^              |
                              v   |              v
                          MessageBus (MQTT)   mixer replies / /xremote updates
                              |
                              v
                     feedback: DeviceRegistry outputs, BlinkScheduler

USAGE:
    # List MIDI devices
    python3 -m mixbridge --list-devices

    # Defaults (WORLDE easy CTRL -> XR18 at 10.9.9.215)
    python3 -m mixbridge

    # Custom mapping file and mixer
    python3 -m mixbridge -m my_mappings.yaml -a 192.168.1.50 -p 10024
"""

import argparse
import os
import signal
import sys
import threading

from mixbridge import bus as message_bus
from mixbridge import osc
from mixbridge.blink import BlinkScheduler
from mixbridge.devices import DeviceRegistry, MidiInputPoller
from mixbridge.log import LOG_LEVEL_ENV, get_logger, set_level
from mixbridge.mapping import DEFAULT_MAPPINGS_PATH, load_mappings
from mixbridge.router import MessageRouter
from mixbridge.state import DEFAULT_STATE_PATH, SnapshotStore

logger = get_logger(__name__)

CLOSE_GRACE = 1.0      # Seconds between mixer link loss and exit
EXIT_LINK_CLOSED = 2


class Bridge:
    """Owns every component and their lifecycle.

    Args:
        args: Parsed command-line namespace (see build_parser)
    """

    def __init__(self, args: argparse.Namespace):
        self.args = args
        self.exit_code = 0
        self.stop_event = threading.Event()
        self.table = None
        self.devices = None
        self.mixer = None
        self.bus = None
        self.blink = None
        self.router = None
        self.snapshot = None
        self.poller = None

    def setup(self) -> None:
        """Create and start all components.

        Raises:
            FileNotFoundError: If the mapping file doesn't exist
            ValueError: If the mapping file or a port is invalid
            RuntimeError: If the MIDI input device is not present
            OSError: If the local OSC port cannot be bound
        """
        args = self.args
        self.table = load_mappings(args.mappings, default_input=args.midi_device,
                                   default_output=args.midi_out_device)

        self.devices = DeviceRegistry(default_output=self.table.default_output)
        inputs = {}
        for name in self.table.input_devices():
            port = self.devices.resolve_input(name)
            if port is not None:
                inputs[name] = port
        if not inputs:
            names = ", ".join(self.table.input_devices()) or "none configured"
            raise RuntimeError(f"No MIDI input device found ({names})")

        self.blink = BlinkScheduler()
        self.snapshot = SnapshotStore(args.state_path)

        self.mixer = osc.MixerLink(args.mixer_address, args.mixer_port, args.local_port,
                                   on_close=self._on_mixer_closed)
        self.bus = message_bus.MessageBus(args.mqtt_url, args.mqtt_topic)

        self.router = MessageRouter(self.table, self.mixer, self.bus, self.devices,
                                    self.blink, snapshot=self.snapshot,
                                    base_topic=args.mqtt_topic)

        self.mixer.on_message = self.router.on_mixer_message
        self.bus.on_message = self.router.on_bus_message
        self.bus.topics = message_bus.subscription_topics(
            args.mqtt_topic, self.table.control_targets(), self.table.feedback_addresses())

        self.mixer.open()
        self.bus.start()
        self.blink.start()

        self.router.restore(self.snapshot.load())

        self.poller = MidiInputPoller(inputs, self.router.on_midi_message)
        self.poller.start()

    def _on_mixer_closed(self):
        logger.error(f"OSC UDP port closed remotely! Exiting in {CLOSE_GRACE:.0f} sec...")

        def stop():
            self.exit_code = EXIT_LINK_CLOSED
            self.stop_event.set()

        timer = threading.Timer(CLOSE_GRACE, stop)
        timer.daemon = True
        timer.start()

    def run(self) -> int:
        """Block until stop() or mixer loss. Returns the exit code."""
        logger.info("Bridge running. Press Ctrl+C to exit.")
        while not self.stop_event.wait(1.0):
            pass
        return self.exit_code

    def stop(self) -> None:
        self.stop_event.set()

    def cleanup(self) -> None:
        """Stop everything that was started, in reverse order."""
        logger.info("Cleanup before exit")
        if self.poller is not None:
            self.poller.stop()
        if self.router is not None:
            self.router.shutdown()
        if self.blink is not None:
            self.blink.stop()
        if self.snapshot is not None:
            self.snapshot.flush()
        if self.bus is not None:
            self.bus.stop()
        if self.mixer is not None:
            self.mixer.close()
        if self.devices is not None:
            self.devices.close_all()

        if self.router is not None:
            stats = osc.MessageStatistics()
            stats.merge(self.router.stats)
            if self.mixer is not None:
                stats.increment('mixer_received', self.mixer.stats.get('mixer_received'))
            stats.print_stats("MIXBRIDGE STATISTICS")


def list_devices() -> None:
    """Print MIDI input and output port names."""
    inputs, outputs = DeviceRegistry().list_devices()
    print("INPUT DEVICES")
    for name in inputs:
        print(f"  - {name}")
    print("\nOUTPUT DEVICES")
    for name in outputs:
        print(f"  - {name}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Bridge MIDI control surfaces to a Behringer X-Air/X32 mixer and MQTT"
    )
    parser.add_argument(
        "mappings_positional", nargs="?", default=None, metavar="MAPPINGS",
        help="Mapping file (same as --mappings)",
    )
    parser.add_argument(
        "-m", "--mappings", default=str(DEFAULT_MAPPINGS_PATH),
        help=f"YAML mapping file (default: {DEFAULT_MAPPINGS_PATH.name})",
    )
    parser.add_argument(
        "-l", "--list-devices", action="store_true",
        help="List MIDI devices and exit",
    )
    parser.add_argument(
        "-d", "--midi-device", default=None,
        help="Default MIDI input device name prefix (default: devices.input of the mapping file)",
    )
    parser.add_argument(
        "-o", "--midi-out-device", default=None,
        help="Default MIDI output device name prefix (default: mapping file)",
    )
    parser.add_argument(
        "-a", "--mixer-address", default=osc.DEFAULT_MIXER_ADDRESS,
        help=f"Mixer IP address (default: {osc.DEFAULT_MIXER_ADDRESS})",
    )
    parser.add_argument(
        "-p", "--mixer-port", type=int, default=osc.MIXER_PORT,
        help=f"Mixer OSC port (default: {osc.MIXER_PORT})",
    )
    parser.add_argument(
        "--local-port", type=int, default=osc.LOCAL_PORT,
        help=f"Local OSC port (default: {osc.LOCAL_PORT})",
    )
    parser.add_argument(
        "-b", "--mqtt-url", default=message_bus.DEFAULT_URL,
        help=f"MQTT broker URL (default: {message_bus.DEFAULT_URL})",
    )
    parser.add_argument(
        "-t", "--mqtt-topic", default=message_bus.DEFAULT_BASE_TOPIC,
        help=f"MQTT base topic (default: {message_bus.DEFAULT_BASE_TOPIC})",
    )
    parser.add_argument(
        "--state-path", default=DEFAULT_STATE_PATH,
        help=f"Snapshot file (default: {DEFAULT_STATE_PATH})",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=os.getenv(LOG_LEVEL_ENV, "INFO"),
        help="Logging verbosity (default: INFO)",
    )
    return parser


def parse_args(argv=None) -> argparse.Namespace:
    """Parse and validate command-line arguments.

    Raises:
        ValueError: If a port is out of range
    """
    args = build_parser().parse_args(argv)
    if args.mappings_positional:
        args.mappings = args.mappings_positional
    osc.validate_port(args.mixer_port)
    osc.validate_port(args.local_port)
    return args


def main(argv=None) -> None:
    """Main entry point."""
    try:
        args = parse_args(argv)
    except ValueError as e:
        logger.error(f"{e}")
        sys.exit(1)

    set_level(args.log_level)

    if args.list_devices:
        list_devices()
        sys.exit(0)

    logger.info("=" * 60)
    logger.info("MIXBRIDGE")
    logger.info("=" * 60)

    bridge = Bridge(args)

    def signal_handler(sig, frame):
        logger.info(f"Received signal {sig}, shutting down...")
        bridge.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        bridge.setup()
    except (FileNotFoundError, ValueError) as e:
        logger.error(f"{e}")
        bridge.cleanup()
        sys.exit(1)
    except RuntimeError as e:
        logger.error(f"{e}")
        inputs, _ = bridge.devices.list_devices()
        logger.info("Available MIDI input devices:")
        for name in inputs:
            logger.info(f"  - {name}")
        bridge.cleanup()
        sys.exit(1)
    except OSError as e:
        if "Address already in use" in str(e):
            logger.error(f"Port {args.local_port} already in use")
        else:
            logger.error(f"{e}")
        bridge.cleanup()
        sys.exit(1)

    try:
        exit_code = bridge.run()
    except KeyboardInterrupt:
        exit_code = 0
    finally:
        bridge.cleanup()

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
