"""
Message router - dispatches events between control surfaces, mixer and bus.

Event sources and what happens to them:

    Control surface (MIDI):
        control_change -> debounced per (device, controller), last value wins
        note/program   -> dispatched immediately
        mapped control -> convert -> mixer send (+ snapshot) -> bus publish
                          -> feedback mirror on other control surfaces

    Mixer (OSC):
        address -> feedback Action; every step runs with the same value and a
        failing step does not stop the others

    Bus (MQTT):
        {base}{address}/set -> forwarded to the mixer
        {base}{address}     -> treated like a mixer message (no re-publish)

All dispatch is serialized by one lock: MIDI polling, OSC receive, MQTT
network loop, debounce timers and restore run on different threads but never
handle events concurrently. Errors are logged and the event dropped; nothing
is retried.
"""

import json
import threading
from typing import Any, Dict, Optional

import mido

from mixbridge.blink import BlinkScheduler
from mixbridge.bus import (
    DEFAULT_BASE_TOPIC,
    address_from_topic,
    is_set_topic,
    state_payload,
)
from mixbridge.debounce import DebounceCoalescer
from mixbridge.devices import DeviceRegistry, feedback_message, midi_from_json, midi_to_json
from mixbridge.log import get_logger
from mixbridge.mapping import (
    CONTROL_CHANGE,
    MESSAGE_TYPES,
    STEP_BLINK,
    STEP_MIDI,
    STEP_PUBLISH,
    FeedbackStep,
    MappingTable,
    message_number,
    message_value,
)
from mixbridge.osc import MessageStatistics, message_from_json, message_to_json
from mixbridge.values import TYPE_FLOAT, TYPE_INT, FloatConverter, PathStateStore, is_absent

logger = get_logger(__name__)

CC_COALESCE_MS = 20  # Quiet time before a CC burst is dispatched

# Event sources
SOURCE_MIXER = "mixer"
SOURCE_BUS = "bus"


def parse_bus_payload(payload: str) -> Any:
    """Decode a bus payload (JSON document or bare JSON value).

    Raises:
        ValueError: If the payload is not JSON
    """
    try:
        return json.loads(payload)
    except (TypeError, ValueError) as e:
        raise ValueError(f"payload is not JSON: {payload!r}") from e


def payload_value(data: Any) -> Any:
    """The value carried by a decoded payload: data["value"] or the bare value.

    Raises:
        ValueError: If a JSON object has no 'value'
    """
    if isinstance(data, dict):
        if 'value' not in data:
            raise ValueError(f"payload has no 'value': {data!r}")
        return data['value']
    return data


class MessageRouter:
    """Routes events between MIDI devices, the mixer and the message bus.

    Args:
        table: Mapping table
        mixer: Object with send(address, args) (normally osc.MixerLink)
        bus: Object with publish(address, payload), or None
        devices: Device registry for feedback outputs
        blink: Blink scheduler for blinking feedback
        states: Path state store used by converters
        snapshot: Optional state.SnapshotStore recording control changes
        base_topic: Bus topic prefix, used to decode inbound topics
        coalesce_ms: Debounce window for control_change events
        timer_factory: Timer constructor for the CC coalescer
    """

    def __init__(self, table: MappingTable, mixer, bus=None,
                 devices: Optional[DeviceRegistry] = None,
                 blink: Optional[BlinkScheduler] = None,
                 states: Optional[PathStateStore] = None,
                 snapshot=None,
                 base_topic: str = DEFAULT_BASE_TOPIC,
                 coalesce_ms: float = CC_COALESCE_MS,
                 timer_factory=threading.Timer):
        self.table = table
        self.mixer = mixer
        self.bus = bus
        self.devices = devices if devices is not None else DeviceRegistry(table.default_output)
        self.blink = blink if blink is not None else BlinkScheduler()
        self.states = states if states is not None else PathStateStore()
        self.snapshot = snapshot
        self.base_topic = base_topic
        self.coalesce_ms = coalesce_ms

        self.coalescer = DebounceCoalescer(self._on_coalesced, timer_factory)
        self.stats = MessageStatistics()
        self._lock = threading.RLock()

        self._step_handlers = {
            STEP_MIDI: self._run_midi_step,
            STEP_BLINK: self._run_blink_step,
            STEP_PUBLISH: self._run_publish_step,
        }

    # ------------------------------------------------------------------
    # Control surface -> mixer
    # ------------------------------------------------------------------

    def on_midi_message(self, device: str, msg: mido.Message) -> None:
        """Entry point for every inbound MIDI message from device."""
        self.stats.increment('midi_events')

        if msg.type == CONTROL_CHANGE:
            key = (device, msg.control)
            if self.coalescer.pending(key):
                self.stats.increment('coalesced_events')
            self.coalescer.schedule(key, self.coalesce_ms, (device, msg))
            return

        if msg.type in MESSAGE_TYPES:
            self.handle_control_event(device, msg)
        else:
            logger.debug(f"Ignoring {msg.type} from {device}")

    def _on_coalesced(self, key, payload):
        device, msg = payload
        self.handle_control_event(device, msg)

    def handle_control_event(self, device: str, msg: mido.Message) -> Optional[Any]:
        """Translate one control surface event. Returns the value sent, or None."""
        with self._lock:
            try:
                return self._dispatch_control(device, msg)
            except Exception as e:
                self.stats.increment('dropped_events')
                logger.warning(f"Dropped {msg.type} from {device}: {e}")
                return None

    def _dispatch_control(self, device, msg):
        number = message_number(msg)
        raw = message_value(msg)

        entry = self.table.lookup(device, msg.type, number)
        if entry is None:
            self.stats.increment('lookup_misses')
            logger.info(f"No mapping for {device} {msg.type} {number}")
            return None

        value = entry.converter.convert(raw, entry.address, self.states)
        args = [(entry.value_type, value)]
        logger.info(f"Mapping found! {device} {msg.type} {number}={raw} -> {entry.address} {value}")

        try:
            self.mixer.send(entry.address, args)
            self.stats.increment('mixer_sent')
            if self.snapshot is not None:
                self.snapshot.record(entry.address, message_to_json(entry.address, args),
                                     midi_to_json(device, msg))
        except Exception as e:
            self.stats.increment('failed_actions')
            logger.warning(f"Error sending command to mixer: {entry.address} {args}: {e}")

        self._publish(entry.address, entry.value_type, value, raw)

        # Mirror onto other surfaces; the bus already has the value
        action = self.table.actions_for(entry.address)
        if action is not None:
            self._run_steps([s for s in action.steps if s.kind != STEP_PUBLISH], value, raw)

        return value

    # ------------------------------------------------------------------
    # Mixer -> feedback
    # ------------------------------------------------------------------

    def on_mixer_message(self, address: str, *args) -> None:
        """Entry point for every inbound mixer message."""
        value = args[0] if args else None
        self.handle_feedback(address, value, source=SOURCE_MIXER)

    def handle_feedback(self, address: str, value: Any, raw_value: Any = None,
                        source: str = SOURCE_MIXER) -> int:
        """Run the feedback action of address. Returns the number of steps that succeeded.

        Publish steps are skipped for bus-originated values so a bus
        message never echoes back onto the bus.
        """
        with self._lock:
            action = self.table.actions_for(address)
            if action is None:
                self.stats.increment('lookup_misses')
                logger.info(f"No feedback mapping for {address}")
                return 0

            steps = action.steps
            if source == SOURCE_BUS:
                steps = [step for step in steps if step.kind != STEP_PUBLISH]
            logger.debug(f"Feedback {address}={value} ({len(steps)} steps from {source})")
            return self._run_steps(steps, value, raw_value)

    def _run_steps(self, steps, value, raw_value=None) -> int:
        succeeded = 0
        for step in steps:
            try:
                self._step_handlers[step.kind](step, value, raw_value)
                succeeded += 1
            except Exception as e:
                self.stats.increment('failed_actions')
                logger.warning(f"Feedback {step.kind} for {step.address} "
                               f"({step.device or 'default'}) failed: {e}")
        return succeeded

    def _send_midi(self, step: FeedbackStep, value: Any) -> bool:
        port = self.devices.output_for(step.device)
        if port is None:
            self.stats.increment('dropped_actions')
            return False
        port.send(feedback_message(step.message_type, step.number, value, step.channel))
        self.stats.increment('midi_sent')
        return True

    def _run_midi_step(self, step: FeedbackStep, value, raw_value):
        self._send_midi(step, step.converter.convert(value))

    def _run_blink_step(self, step: FeedbackStep, value, raw_value):
        def send(output):
            if not self._send_midi(step, output):
                raise OSError(f"no MIDI output for '{step.device or 'default'}'")

        on_value = None if is_absent(value) else step.converter.convert(value)
        self.blink.register(step.blink_id, send, on_value, step.off_value)

    def _run_publish_step(self, step: FeedbackStep, value, raw_value):
        value_type = TYPE_FLOAT if isinstance(value, float) else TYPE_INT
        self._publish(step.address, value_type, value,
                      value if raw_value is None else raw_value, isolated=False)

    def _publish(self, address, value_type, value, raw_value, isolated=True):
        if self.bus is None:
            return
        try:
            self.bus.publish(address, state_payload(value_type, value, raw_value))
            self.stats.increment('bus_published')
        except Exception as e:
            if not isolated:
                raise
            self.stats.increment('failed_actions')
            logger.warning(f"Error publishing {address} to MQTT: {e}")

    # ------------------------------------------------------------------
    # Bus -> mixer / feedback
    # ------------------------------------------------------------------

    def on_bus_message(self, topic: str, payload: str) -> None:
        """Entry point for every inbound bus message."""
        self.stats.increment('bus_received')
        with self._lock:
            try:
                self._dispatch_bus(topic, payload)
            except ValueError as e:
                self.stats.increment('malformed_messages')
                logger.warning(f"Malformed message on \"{topic}\": {e}")
            except Exception as e:
                self.stats.increment('dropped_events')
                logger.warning(f"Error handling message on \"{topic}\": {e}")

    def _dispatch_bus(self, topic, payload):
        address = address_from_topic(self.base_topic, topic)
        if address is None:
            logger.info(f"Ignoring message on foreign topic \"{topic}\"")
            return

        data = parse_bus_payload(payload)

        if is_set_topic(topic):
            if isinstance(data, dict) and 'address' in data:
                target, args = message_from_json(data)
            else:
                target = address
                args = [(self.table.value_type_for(address), payload_value(data))]
            logger.info(f"Sending command from MQTT to mixer: {target} {args}")
            self.mixer.send(target, args)
            self.stats.increment('mixer_sent')
            return

        self.handle_feedback(address, payload_value(data), source=SOURCE_BUS)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def restore(self, entries: Dict[str, Dict[str, Any]]) -> int:
        """Replay a persisted snapshot. Returns the number of sends that succeeded.

        For every address: seed the fader's last raw value, re-send the last
        mixer message and echo the last MIDI message to the default output.
        """
        sent = 0
        with self._lock:
            for address, entry in entries.items():
                logger.info(f"Recover state for: {address}")
                try:
                    sent += self._restore_entry(address, entry)
                except Exception as e:
                    logger.warning(f"Skipping unusable state for {address}: {e}")
        return sent

    def _restore_entry(self, address, entry) -> int:
        if not isinstance(entry, dict):
            raise ValueError(f"expected an object, got {entry!r}")

        sent = 0
        osc_data = entry.get('osc')
        midi_data = entry.get('midi')

        if midi_data:
            self._seed_state(address, midi_data)

        if osc_data:
            try:
                target, args = message_from_json(osc_data)
                self.mixer.send(target, args)
                sent += 1
            except Exception as e:
                logger.warning(f"Error restoring {address} on mixer: {e}")

        if midi_data:
            try:
                port = self.devices.output_for(None)
                if port is not None:
                    port.send(midi_from_json(midi_data))
                    sent += 1
            except Exception as e:
                logger.warning(f"Error sending MIDI command for {address}: {e}")
        return sent

    def _seed_state(self, address, midi_data):
        try:
            msg = midi_from_json(midi_data)
        except ValueError:
            return
        entry = self.table.lookup(midi_data.get('device'), msg.type, message_number(msg))
        # Fine-adjust knobs share the fader's address; only the fader's raw value is "current"
        if entry is not None and entry.address == address and isinstance(entry.converter, FloatConverter):
            self.states.seed(address, message_value(msg))

    def shutdown(self) -> None:
        """Cancel pending debounced events."""
        cancelled = self.coalescer.cancel_all()
        if cancelled:
            logger.info(f"Cancelled {cancelled} pending control events")
