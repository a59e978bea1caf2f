"""
Tests for the mapping table

Validates control lookup, feedback actions, factory helpers, and YAML
mapping validation.
"""

import mido
import pytest

from mixbridge.mapping import (
    CONTROL_CHANGE,
    DEFAULT_MAPPINGS_PATH,
    NOTE_ON,
    PROGRAM_CHANGE,
    STEP_BLINK,
    STEP_MIDI,
    STEP_PUBLISH,
    ActionList,
    MappingTable,
    SingleAction,
    blink_feedback,
    build_table,
    button_target,
    constant_feedback,
    fine_max_target,
    float_target,
    load_mappings,
    make_action,
    message_number,
    message_value,
    midi_feedback,
    normalize_message_type,
    publish_feedback,
)
from mixbridge.values import BoolConverter, ConstantConverter, FineMaxConverter, FloatConverter

DEVICE = "WORLDE easy CTRL"


def sample_table():
    controls = [
        float_target(DEVICE, 3, "/ch/01/mix/fader"),
        fine_max_target(DEVICE, 14, "/ch/01/mix/fader"),
        button_target(DEVICE, 23, "/ch/01/mix/on"),
    ]
    feedback = {
        "/ch/01/mix/on": [midi_feedback("/ch/01/mix/on", 44, device="LPD8")],
        "/lr/mix/on": [
            blink_feedback("/lr/mix/on", 40, device="LPD8"),
            publish_feedback("/lr/mix/on"),
        ],
    }
    return MappingTable(controls, feedback, DEVICE, DEVICE)


class TestMessageTypes:
    """Test message type names and field access."""

    def test_aliases(self):
        assert normalize_message_type("cc") == CONTROL_CHANGE
        assert normalize_message_type("noteon") == NOTE_ON
        assert normalize_message_type("NoteOn") == NOTE_ON
        assert normalize_message_type("program") == PROGRAM_CHANGE
        assert normalize_message_type("control_change") == CONTROL_CHANGE

    def test_unknown_type(self):
        with pytest.raises(ValueError, match="Unsupported MIDI message type"):
            normalize_message_type("pitchwheel")

    def test_number_and_value(self):
        cc = mido.Message("control_change", control=3, value=64)
        note = mido.Message("note_on", note=44, velocity=100)
        program = mido.Message("program_change", program=5)

        assert (message_number(cc), message_value(cc)) == (3, 64)
        assert (message_number(note), message_value(note)) == (44, 100)
        assert (message_number(program), message_value(program)) == (5, 5)


class TestMappingTable:
    """Test table lookups."""

    def test_lookup_hit(self):
        table = sample_table()
        entry = table.lookup(DEVICE, CONTROL_CHANGE, 3)

        assert entry.address == "/ch/01/mix/fader"
        assert entry.value_type == "f"
        assert isinstance(entry.converter, FloatConverter)

    def test_lookup_miss(self):
        table = sample_table()
        assert table.lookup(DEVICE, CONTROL_CHANGE, 99) is None
        assert table.lookup("LPD8", CONTROL_CHANGE, 3) is None
        assert table.lookup(DEVICE, NOTE_ON, 3) is None

    def test_duplicate_key_rejected(self):
        controls = [
            float_target(DEVICE, 3, "/ch/01/mix/fader"),
            button_target(DEVICE, 3, "/ch/01/mix/on"),
        ]
        with pytest.raises(ValueError, match="Duplicate control mapping"):
            MappingTable(controls)

    def test_same_address_from_two_controls(self):
        table = sample_table()
        fine = table.lookup(DEVICE, CONTROL_CHANGE, 14)

        assert fine.address == "/ch/01/mix/fader"
        assert isinstance(fine.converter, FineMaxConverter)
        assert table.control_targets() == ["/ch/01/mix/fader", "/ch/01/mix/on"]

    def test_actions(self):
        table = sample_table()

        single = table.actions_for("/ch/01/mix/on")
        assert isinstance(single, SingleAction)
        assert single.steps[0].kind == STEP_MIDI

        multi = table.actions_for("/lr/mix/on")
        assert isinstance(multi, ActionList)
        assert [step.kind for step in multi.steps] == [STEP_BLINK, STEP_PUBLISH]

        assert table.actions_for("/ch/99/mix/on") is None

    def test_devices(self):
        table = sample_table()
        assert table.input_devices() == [DEVICE]
        assert table.output_devices() == ["LPD8"]

    def test_value_type_for(self):
        table = sample_table()
        assert table.value_type_for("/ch/01/mix/on") == "i"
        assert table.value_type_for("/ch/01/mix/fader") == "f"
        assert table.value_type_for("/unknown") == "f"


class TestFactoryHelpers:
    """Test entry construction helpers."""

    def test_make_action(self):
        step = publish_feedback("/lr/mix/on")
        assert isinstance(make_action([step]), SingleAction)
        assert isinstance(make_action([step, step]), ActionList)
        with pytest.raises(ValueError):
            make_action([])

    def test_blink_defaults_to_inverted(self):
        step = blink_feedback("/lr/mix/on", 40)
        assert step.converter.convert(0) == 127
        assert step.converter.convert(1) == 0
        assert step.off_value == 0

    def test_constant_feedback(self):
        step = constant_feedback("/ch/01/mix/on", 44, 5)
        assert isinstance(step.converter, ConstantConverter)
        assert step.converter.convert(0) == 5

    def test_blink_id_per_indicator(self):
        a = blink_feedback("/lr/mix/on", 40, device="LPD8")
        b = blink_feedback("/lr/mix/on", 41, device="LPD8")
        assert a.blink_id != b.blink_id
        assert a.blink_id == blink_feedback("/lr/mix/on", 40, device="LPD8").blink_id


class TestBuildTable:
    """Test mapping config validation."""

    def test_defaults_from_devices_section(self):
        config = {
            "devices": {"input": DEVICE, "output": "LPD8"},
            "controls": [{"type": "cc", "number": 3, "address": "/ch/01/mix/fader"}],
        }
        table = build_table(config)

        assert table.default_input == DEVICE
        assert table.default_output == "LPD8"
        assert table.lookup(DEVICE, CONTROL_CHANGE, 3) is not None

    def test_overrides(self):
        config = {
            "devices": {"input": DEVICE},
            "controls": [{"number": 3, "address": "/ch/01/mix/fader"}],
        }
        table = build_table(config, default_input="nanoKONTROL", default_output="LPD8")

        assert table.lookup("nanoKONTROL", CONTROL_CHANGE, 3) is not None
        assert table.default_output == "LPD8"

    def test_bool_control(self):
        config = {"controls": [{"device": DEVICE, "number": 23,
                                "address": "/ch/01/mix/on", "convert": "bool"}]}
        entry = build_table(config).lookup(DEVICE, CONTROL_CHANGE, 23)

        assert entry.value_type == "i"
        assert isinstance(entry.converter, BoolConverter)

    def test_feedback_single_step_dict(self):
        config = {"feedback": {"/ch/01/mix/on": {"device": "LPD8", "number": 44}}}
        action = build_table(config).actions_for("/ch/01/mix/on")

        assert isinstance(action, SingleAction)
        assert action.step.number == 44
        assert action.step.message_type == NOTE_ON

    @pytest.mark.parametrize("config,match", [
        ({"controls": [{"number": 3, "address": "/x"}]}, "no 'device'"),
        ({"controls": [{"device": DEVICE, "address": "/x"}]}, "missing 'number'"),
        ({"controls": [{"device": DEVICE, "number": 128, "address": "/x"}]}, "0-127"),
        ({"controls": [{"device": DEVICE, "number": 3, "address": "x"}]}, "must start with '/'"),
        ({"controls": [{"device": DEVICE, "number": 3, "address": "/x", "convert": "log"}]},
         "unknown convert"),
        ({"controls": [{"device": DEVICE, "number": 3, "address": "/x", "max": 2}]}, "max must be"),
        ({"controls": {"a": 1}}, "'controls' must be a list"),
        ({"feedback": {"/x": [{"kind": "flash", "number": 1}]}}, "unknown kind"),
        ({"feedback": {"/x": [{"number": 1, "channel": 16}]}}, "channel must be"),
        ({"feedback": {"/x": []}}, "at least one step"),
    ])
    def test_invalid_config(self, config, match):
        with pytest.raises(ValueError, match=match):
            build_table(config)

    def test_top_level_must_be_mapping(self):
        with pytest.raises(ValueError):
            build_table(["controls"])


class TestLoadMappings:
    """Test YAML loading."""

    def test_default_file(self):
        table = load_mappings(DEFAULT_MAPPINGS_PATH)

        fader = table.lookup(DEVICE, CONTROL_CHANGE, 3)
        assert fader.address == "/ch/01/mix/fader"
        assert table.lookup(DEVICE, CONTROL_CHANGE, 31).address == "/lr/mix/on"
        assert isinstance(table.lookup(DEVICE, CONTROL_CHANGE, 14).converter, FineMaxConverter)

        lr = table.actions_for("/lr/mix/on")
        assert [step.kind for step in lr.steps] == [STEP_BLINK, STEP_PUBLISH]
        assert table.actions_for("/ch/01/mix/on").steps[0].number == 44

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_mappings(tmp_path / "missing.yaml")

    def test_custom_file(self, tmp_path):
        path = tmp_path / "mappings.yaml"
        path.write_text(
            "devices:\n"
            "  input: nanoKONTROL\n"
            "controls:\n"
            "  - {type: noteon, number: 36, address: /ch/02/mix/on, convert: bool}\n"
        )
        table = load_mappings(path)

        assert table.lookup("nanoKONTROL", NOTE_ON, 36).address == "/ch/02/mix/on"
        assert len(table) == 1

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")
        assert len(load_mappings(path)) == 0
