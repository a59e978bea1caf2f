#!/usr/bin/env python3
"""
Send one OSC message to the mixer from the command line.

Usage:
    python -m mixbridge.cli [--host H] [--port P] <address> [arg1] [arg2] ...

Examples:
    python -m mixbridge.cli /ch/01/mix/fader 0.75
    python -m mixbridge.cli /ch/01/mix/on 0
    python -m mixbridge.cli --host 192.168.1.50 /lr/mix/fader 0.5
"""

import argparse

from pythonosc import udp_client

from mixbridge.osc import DEFAULT_MIXER_ADDRESS, MIXER_PORT, validate_port


def parse_argument(arg: str):
    """Parse a command-line argument to the appropriate type.

    Attempts to convert string arguments to int or float, preserving
    strings if conversion fails.
    """
    try:
        return int(arg)
    except ValueError:
        pass
    try:
        return float(arg)
    except ValueError:
        pass
    return arg


def send_osc_message(address: str, args: list, host: str = DEFAULT_MIXER_ADDRESS,
                     port: int = MIXER_PORT):
    """Send a single OSC message to the mixer."""
    validate_port(port)
    client = udp_client.SimpleUDPClient(host, port)
    client.send_message(address, args)
    print(f"Sent to {host}:{port} → {address} {args}")


def main(argv=None):
    """CLI entry point for sending OSC messages."""
    parser = argparse.ArgumentParser(description="Send one OSC message to the mixer")
    parser.add_argument("--host", default=DEFAULT_MIXER_ADDRESS,
                        help=f"Mixer IP address (default: {DEFAULT_MIXER_ADDRESS})")
    parser.add_argument("--port", type=int, default=MIXER_PORT,
                        help=f"Mixer OSC port (default: {MIXER_PORT})")
    parser.add_argument("address", help="OSC address, e.g. /ch/01/mix/fader")
    parser.add_argument("args", nargs="*", help="Arguments (int, float or string)")
    args = parser.parse_args(argv)

    if not args.address.startswith('/'):
        parser.error("OSC address must start with '/'")

    send_osc_message(args.address, [parse_argument(arg) for arg in args.args],
                     host=args.host, port=args.port)


if __name__ == "__main__":
    main()
