"""
Mapping table - which physical control drives which mixer address, and which
outbound feedback follows a mixer address.

Two directions:
    Control surface -> mixer:
        (device, message type, number) -> ControlMapping
        e.g. WORLDE easy CTRL, control_change 3 -> /ch/01/mix/fader (float)

    Mixer -> feedback:
        address -> Action (one FeedbackStep or an ordered list of them)
        e.g. /ch/01/mix/on -> note_on 44 on LPD8

The table is built once (from YAML via load_mappings or in code with the
factory helpers below) and never mutated afterwards, so lookups are safe
from any thread.

YAML layout:

    devices:
      input: "WORLDE easy CTRL"       # controls without a device bind here
      output: "WORLDE easy CTRL"      # fallback for feedback without a device

    controls:
      - {type: cc, number: 3, address: /ch/01/mix/fader, convert: float}
      - {type: cc, number: 14, address: /ch/01/mix/fader, convert: fine_max}
      - {type: cc, number: 23, address: /ch/01/mix/on, convert: bool}

    feedback:
      /ch/01/mix/on:
        - {kind: midi, device: LPD8, type: noteon, number: 44}
        - {kind: blink, device: LPD8, type: noteon, number: 44, invert: true}
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import yaml

from mixbridge.log import get_logger
from mixbridge.values import (
    MIDI_MAX,
    TYPE_FLOAT,
    TYPE_INT,
    BoolConverter,
    ConstantConverter,
    FineMaxConverter,
    FloatConverter,
    ValueConverter,
)

logger = get_logger(__name__)

DEFAULT_MAPPINGS_PATH = Path(__file__).parent / "config" / "mappings.yaml"

# ============================================================================
# MESSAGE TYPES
# ============================================================================

CONTROL_CHANGE = "control_change"
NOTE_ON = "note_on"
NOTE_OFF = "note_off"
PROGRAM_CHANGE = "program_change"

MESSAGE_TYPES = (CONTROL_CHANGE, NOTE_ON, NOTE_OFF, PROGRAM_CHANGE)

# Short names used in mapping files
MESSAGE_TYPE_ALIASES = {
    "cc": CONTROL_CHANGE,
    "noteon": NOTE_ON,
    "noteoff": NOTE_OFF,
    "program": PROGRAM_CHANGE,
}

# Feedback step kinds
STEP_MIDI = "midi"
STEP_BLINK = "blink"
STEP_PUBLISH = "publish"
STEP_KINDS = (STEP_MIDI, STEP_BLINK, STEP_PUBLISH)


def normalize_message_type(name: str) -> str:
    """Return the mido message type for a mapping-file type name.

    Raises:
        ValueError: If name is not a supported message type
    """
    key = str(name).strip().lower()
    key = MESSAGE_TYPE_ALIASES.get(key, key)
    if key not in MESSAGE_TYPES:
        raise ValueError(f"Unsupported MIDI message type: {name}")
    return key


def message_number(msg) -> Optional[int]:
    """Controller, note or program number of a mido message."""
    if msg.type == CONTROL_CHANGE:
        return msg.control
    if msg.type in (NOTE_ON, NOTE_OFF):
        return msg.note
    if msg.type == PROGRAM_CHANGE:
        return msg.program
    return None


def message_value(msg) -> Optional[int]:
    """Data value of a mido message (program change carries its number)."""
    if msg.type == CONTROL_CHANGE:
        return msg.value
    if msg.type in (NOTE_ON, NOTE_OFF):
        return msg.velocity
    if msg.type == PROGRAM_CHANGE:
        return msg.program
    return None


# ============================================================================
# ENTRIES
# ============================================================================

@dataclass(frozen=True)
class ControlMapping:
    """One physical control bound to one mixer address.

    Attributes:
        device: Logical input device name (prefix of the port name)
        message_type: mido message type
        number: Controller, note or program number
        address: Mixer OSC address the converted value is sent to
        value_type: OSC type tag ("f" or "i")
        converter: ValueConverter applied to the raw MIDI value
    """
    device: str
    message_type: str
    number: int
    address: str
    value_type: str
    converter: ValueConverter

    @property
    def key(self) -> Tuple[str, str, int]:
        return (self.device, self.message_type, self.number)


@dataclass(frozen=True)
class FeedbackStep:
    """One outbound action taken when a mixer address changes.

    kind "midi" sends converter(value) to the control surface, kind "blink"
    alternates converter(value) with off_value through the blink scheduler,
    kind "publish" mirrors the value to the message bus.
    """
    kind: str
    address: str
    device: Optional[str] = None
    message_type: str = NOTE_ON
    number: int = 0
    channel: int = 0
    converter: ValueConverter = field(default_factory=lambda: BoolConverter(MIDI_MAX, 0))
    off_value: int = 0

    @property
    def blink_id(self) -> str:
        """Registration id for the blink scheduler (one per indicator)."""
        return f"{self.address}|{self.device or ''}|{self.message_type}|{self.number}"


@dataclass(frozen=True)
class SingleAction:
    step: FeedbackStep

    @property
    def steps(self) -> Tuple[FeedbackStep, ...]:
        return (self.step,)


@dataclass(frozen=True)
class ActionList:
    items: Tuple[FeedbackStep, ...]

    @property
    def steps(self) -> Tuple[FeedbackStep, ...]:
        return self.items


Action = Union[SingleAction, ActionList]


def make_action(steps: Sequence[FeedbackStep]) -> Action:
    """Wrap steps as SingleAction (one step) or ActionList (several)."""
    steps = tuple(steps)
    if not steps:
        raise ValueError("An action needs at least one step")
    if len(steps) == 1:
        return SingleAction(steps[0])
    return ActionList(steps)


# ============================================================================
# FACTORY HELPERS
# ============================================================================

def float_target(device: str, number: int, address: str,
                 fixed_max: Optional[float] = None,
                 message_type: str = CONTROL_CHANGE) -> ControlMapping:
    """Fader/knob scaled into 0..max of address."""
    return ControlMapping(device, message_type, number, address, TYPE_FLOAT,
                          FloatConverter(fixed_max))


def fine_max_target(device: str, number: int, address: str,
                    message_type: str = CONTROL_CHANGE) -> ControlMapping:
    """Knob that sets the ceiling of the fader bound to address."""
    return ControlMapping(device, message_type, number, address, TYPE_FLOAT,
                          FineMaxConverter())


def button_target(device: str, number: int, address: str,
                  message_type: str = CONTROL_CHANGE) -> ControlMapping:
    """Button sending 1/0 to an on/off address."""
    return ControlMapping(device, message_type, number, address, TYPE_INT,
                          BoolConverter(1, 0))


def midi_feedback(address: str, number: int, device: Optional[str] = None,
                  message_type: str = NOTE_ON, channel: int = 0,
                  on_value: int = MIDI_MAX, off_value: int = 0,
                  invert: bool = False) -> FeedbackStep:
    """Light an indicator while address is non-zero."""
    return FeedbackStep(STEP_MIDI, address, device, message_type, number, channel,
                        BoolConverter(on_value, off_value, invert))


def constant_feedback(address: str, number: int, value: int,
                      device: Optional[str] = None, message_type: str = NOTE_ON,
                      channel: int = 0) -> FeedbackStep:
    """Always send value, whatever the address changed to."""
    return FeedbackStep(STEP_MIDI, address, device, message_type, number, channel,
                        ConstantConverter(value))


def blink_feedback(address: str, number: int, device: Optional[str] = None,
                   message_type: str = NOTE_ON, channel: int = 0,
                   on_value: int = MIDI_MAX, off_value: int = 0,
                   invert: bool = True) -> FeedbackStep:
    """Blink an indicator while address is zero (muted), steady off otherwise."""
    return FeedbackStep(STEP_BLINK, address, device, message_type, number, channel,
                        BoolConverter(on_value, off_value, invert), off_value)


def publish_feedback(address: str) -> FeedbackStep:
    """Mirror address to the message bus."""
    return FeedbackStep(STEP_PUBLISH, address)


# ============================================================================
# TABLE
# ============================================================================

class MappingTable:
    """Immutable lookup table for both mapping directions.

    Args:
        controls: Control -> address entries; keys must be unique
        feedback: address -> feedback steps, in execution order
        default_input: Logical name of the default input device
        default_output: Logical name of the default output device

    Raises:
        ValueError: On duplicate control keys or empty feedback lists
    """

    def __init__(self, controls: Iterable[ControlMapping],
                 feedback: Optional[Dict[str, Sequence[FeedbackStep]]] = None,
                 default_input: Optional[str] = None,
                 default_output: Optional[str] = None):
        self.default_input = default_input
        self.default_output = default_output

        self._controls: Dict[Tuple[str, str, int], ControlMapping] = {}
        for entry in controls:
            if entry.key in self._controls:
                device, message_type, number = entry.key
                raise ValueError(
                    f"Duplicate control mapping: {device} {message_type} {number}"
                )
            self._controls[entry.key] = entry

        self._actions: Dict[str, Action] = {}
        for address, steps in (feedback or {}).items():
            self._actions[address] = make_action(steps)

        self._value_types: Dict[str, str] = {}
        for entry in self._controls.values():
            self._value_types.setdefault(entry.address, entry.value_type)

    def lookup(self, device: str, message_type: str, number: int) -> Optional[ControlMapping]:
        """Find the mapping for a control, or None when it is not mapped."""
        return self._controls.get((device, message_type, number))

    def actions_for(self, address: str) -> Optional[Action]:
        """Feedback action for a mixer address, or None."""
        return self._actions.get(address)

    def controls(self) -> List[ControlMapping]:
        return list(self._controls.values())

    def control_targets(self) -> List[str]:
        """Distinct mixer addresses driven by controls, sorted."""
        return sorted({entry.address for entry in self._controls.values()})

    def feedback_addresses(self) -> List[str]:
        return sorted(self._actions)

    def input_devices(self) -> List[str]:
        """Distinct logical input devices referenced by controls, sorted."""
        return sorted({entry.device for entry in self._controls.values()})

    def output_devices(self) -> List[str]:
        names = set()
        for action in self._actions.values():
            for step in action.steps:
                if step.kind != STEP_PUBLISH and step.device:
                    names.add(step.device)
        return sorted(names)

    def value_type_for(self, address: str, default: str = TYPE_FLOAT) -> str:
        """OSC type tag used for address by its controls."""
        return self._value_types.get(address, default)

    def __len__(self) -> int:
        return len(self._controls)


# ============================================================================
# CONFIG LOADING
# ============================================================================

def _require(entry: dict, key: str, where: str):
    if key not in entry or entry[key] is None:
        raise ValueError(f"{where}: missing '{key}'")
    return entry[key]


def _parse_number(value, where: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{where}: number must be an integer, got {value!r}")
    if not 0 <= value <= MIDI_MAX:
        raise ValueError(f"{where}: number must be in range 0-{MIDI_MAX}, got {value}")
    return value


def _parse_address(value, where: str) -> str:
    if not isinstance(value, str) or not value.startswith('/'):
        raise ValueError(f"{where}: OSC address must start with '/', got {value!r}")
    return value


def _parse_control(entry: dict, index: int, default_input: Optional[str]) -> ControlMapping:
    where = f"controls[{index}]"
    if not isinstance(entry, dict):
        raise ValueError(f"{where}: expected a mapping, got {type(entry).__name__}")

    device = entry.get('device') or default_input
    if not device:
        raise ValueError(f"{where}: no 'device' and no devices.input default")

    message_type = normalize_message_type(entry.get('type', 'cc'))
    number = _parse_number(_require(entry, 'number', where), where)
    address = _parse_address(_require(entry, 'address', where), where)
    convert = entry.get('convert', 'float')

    if convert == 'float':
        fixed_max = entry.get('max')
        if fixed_max is not None and not 0 < float(fixed_max) <= 1.0:
            raise ValueError(f"{where}: max must be in range (0, 1], got {fixed_max}")
        converter = FloatConverter(None if fixed_max is None else float(fixed_max))
        value_type = TYPE_FLOAT
    elif convert == 'fine_max':
        converter = FineMaxConverter()
        value_type = TYPE_FLOAT
    elif convert == 'bool':
        converter = BoolConverter(entry.get('on', 1), entry.get('off', 0),
                                  bool(entry.get('invert', False)))
        value_type = TYPE_INT
    elif convert == 'constant':
        value = _require(entry, 'value', where)
        converter = ConstantConverter(value)
        value_type = TYPE_FLOAT if isinstance(value, float) else TYPE_INT
    else:
        raise ValueError(f"{where}: unknown convert '{convert}'")

    value_type = entry.get('value_type', value_type)
    if value_type not in (TYPE_FLOAT, TYPE_INT):
        raise ValueError(f"{where}: value_type must be 'f' or 'i', got {value_type!r}")

    return ControlMapping(device, message_type, number, address, value_type, converter)


def _parse_step(address: str, entry: dict, index: int) -> FeedbackStep:
    where = f"feedback[{address}][{index}]"
    if not isinstance(entry, dict):
        raise ValueError(f"{where}: expected a mapping, got {type(entry).__name__}")

    kind = entry.get('kind', STEP_MIDI)
    if kind not in STEP_KINDS:
        raise ValueError(f"{where}: unknown kind '{kind}'")
    if kind == STEP_PUBLISH:
        return publish_feedback(address)

    message_type = normalize_message_type(entry.get('type', 'noteon'))
    number = _parse_number(_require(entry, 'number', where), where)
    channel = int(entry.get('channel', 0))
    if not 0 <= channel <= 15:
        raise ValueError(f"{where}: channel must be in range 0-15, got {channel}")
    device = entry.get('device')
    on_value = _parse_number(entry.get('on', MIDI_MAX), where)
    off_value = _parse_number(entry.get('off', 0), where)

    if kind == STEP_BLINK:
        return blink_feedback(address, number, device, message_type, channel,
                              on_value, off_value, bool(entry.get('invert', True)))

    if entry.get('convert', 'bool') == 'constant':
        value = _parse_number(_require(entry, 'value', where), where)
        return constant_feedback(address, number, value, device, message_type, channel)

    return midi_feedback(address, number, device, message_type, channel,
                         on_value, off_value, bool(entry.get('invert', False)))


def build_table(config: dict, default_input: Optional[str] = None,
                default_output: Optional[str] = None) -> MappingTable:
    """Build and validate a MappingTable from a parsed mapping config.

    Args:
        config: Parsed YAML (sections: devices, controls, feedback)
        default_input: Overrides devices.input
        default_output: Overrides devices.output

    Raises:
        ValueError: If the config is invalid
    """
    if not isinstance(config, dict):
        raise ValueError("Mapping config must be a mapping at top level")

    devices = config.get('devices') or {}
    default_input = default_input or devices.get('input')
    default_output = default_output or devices.get('output')

    controls_config = config.get('controls') or []
    if not isinstance(controls_config, list):
        raise ValueError("'controls' must be a list")
    controls = [_parse_control(entry, i, default_input)
                for i, entry in enumerate(controls_config)]

    feedback_config = config.get('feedback') or {}
    if not isinstance(feedback_config, dict):
        raise ValueError("'feedback' must map addresses to step lists")
    feedback = {}
    for address, steps in feedback_config.items():
        _parse_address(address, f"feedback[{address}]")
        if isinstance(steps, dict):
            steps = [steps]
        if not steps:
            raise ValueError(f"feedback[{address}]: needs at least one step")
        feedback[address] = [_parse_step(address, step, i) for i, step in enumerate(steps)]

    return MappingTable(controls, feedback, default_input, default_output)


def load_mappings(path=DEFAULT_MAPPINGS_PATH, default_input: Optional[str] = None,
                  default_output: Optional[str] = None) -> MappingTable:
    """Load and validate a YAML mapping file.

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If validation fails
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Mapping file not found: {path}")

    with open(path, 'r') as f:
        config = yaml.safe_load(f) or {}

    table = build_table(config, default_input, default_output)

    logger.info(f"Loaded mappings from {path}")
    logger.info(f"  Controls: {len(table)} on {', '.join(table.input_devices()) or 'no devices'}")
    logger.info(f"  Feedback addresses: {len(table.feedback_addresses())}")
    return table
