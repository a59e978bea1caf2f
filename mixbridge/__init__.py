"""
mixbridge - MIDI control surfaces <-> mixer OSC <-> MQTT bridge.

Modules:
    mapping: Control -> mixer address table and mixer -> feedback actions
    values: Value conversion and per-address adaptive state
    devices: MIDI device resolution and input polling
    debounce: Per-key event coalescing
    blink: Periodic blinking feedback
    router: Event dispatch between the three protocols
    osc: Mixer OSC link, keep-alive and statistics
    bus: MQTT message bus
    state: Snapshot persistence
    bridge: Process entry point
"""

__version__ = "0.1.0"

# Note: Modules are imported on-demand so python -m mixbridge.cli works
# without loading the MIDI and MQTT stacks.
