"""
Tests for the mixer OSC link helpers

Validates port validation, message encoding with declared types, the JSON
message form, inbound dispatch, and statistics.
"""

from unittest.mock import Mock, patch

import pytest
from pythonosc.osc_message import OscMessage

from mixbridge.osc import (
    MessageStatistics,
    MixerLink,
    build_message,
    message_from_json,
    message_to_json,
    validate_port,
)


class TestValidatePort:
    """Test port range checking."""

    def test_valid(self):
        validate_port(1)
        validate_port(10024)
        validate_port(65535)

    @pytest.mark.parametrize("port", [0, -1, 65536])
    def test_invalid(self, port):
        with pytest.raises(ValueError, match="Port must be in range"):
            validate_port(port)


class TestBuildMessage:
    """Test OSC encoding."""

    def test_float_argument(self):
        message = OscMessage(build_message("/ch/01/mix/fader", [("f", 1)]).dgram)

        assert message.address == "/ch/01/mix/fader"
        assert message.params == [1.0]
        assert isinstance(message.params[0], float)

    def test_int_argument(self):
        message = OscMessage(build_message("/ch/01/mix/on", [("i", 1.0)]).dgram)
        assert message.params == [1]
        assert isinstance(message.params[0], int)

    def test_no_arguments(self):
        message = OscMessage(build_message("/xremote").dgram)
        assert message.address == "/xremote"
        assert message.params == []

    def test_invalid_address(self):
        with pytest.raises(ValueError):
            build_message("ch/01/mix/on", [("i", 1)])

    def test_unknown_type(self):
        with pytest.raises(ValueError, match="Unsupported OSC argument type"):
            build_message("/ch/01/mix/on", [("b", b"x")])


class TestJsonForm:
    """Test the JSON message form used by the bus and snapshots."""

    def test_parse(self):
        address, args = message_from_json(
            {"address": "/ch/01/mix/on", "args": [{"type": "i", "value": 0}]})
        assert address == "/ch/01/mix/on"
        assert args == [("i", 0)]

    def test_default_type_and_empty_args(self):
        assert message_from_json({"address": "/x", "args": [{"value": 0.5}]}) == ("/x", [("f", 0.5)])
        assert message_from_json({"address": "/xremote"}) == ("/xremote", [])

    def test_to_json(self):
        assert message_to_json("/lr/mix/fader", [("f", 0.5)]) == {
            "address": "/lr/mix/fader", "args": [{"type": "f", "value": 0.5}]}

    @pytest.mark.parametrize("data", [
        {"args": []},
        {"address": 5},
        {"address": "/x", "args": [{"type": "f"}]},
        {"address": "/x", "args": [1]},
        "not a dict",
    ])
    def test_malformed(self, data):
        with pytest.raises(ValueError):
            message_from_json(data)


class TestMixerLink:
    """Test MixerLink without opening a socket."""

    def test_invalid_ports(self):
        with pytest.raises(ValueError):
            MixerLink(mixer_port=0)
        with pytest.raises(ValueError):
            MixerLink(local_port=70000)

    def test_send_when_closed(self):
        link = MixerLink(local_port=0)
        assert not link.is_open
        with pytest.raises(OSError, match="not open"):
            link.send("/ch/01/mix/on", [("i", 1)])

    def test_inbound_message_dispatch(self):
        handler = Mock()
        link = MixerLink(local_port=0, on_message=handler)

        link._handle_message("/ch/01/mix/on", 0)

        handler.assert_called_once_with("/ch/01/mix/on", 0)
        assert link.stats.get('mixer_received') == 1

    def test_handler_error_is_logged(self):
        link = MixerLink(local_port=0, on_message=Mock(side_effect=RuntimeError("boom")))

        with patch('mixbridge.osc.logger') as mock_logger:
            link._handle_message("/ch/01/mix/on", 0)
            mock_logger.error.assert_called_once()

    def test_close_when_never_opened(self):
        MixerLink(local_port=0).close()


class TestMessageStatistics:
    """Test counters."""

    def test_increment_and_get(self):
        stats = MessageStatistics()
        stats.increment('midi_events')
        stats.increment('midi_events', 2)

        assert stats.get('midi_events') == 3
        assert stats.get('missing') == 0

    def test_merge(self):
        a = MessageStatistics()
        b = MessageStatistics()
        a.increment('mixer_sent')
        b.increment('mixer_sent', 2)
        b.increment('bus_published')

        a.merge(b)

        assert a.get('mixer_sent') == 3
        assert a.get('bus_published') == 1

    def test_print_stats(self, capsys):
        stats = MessageStatistics()
        stats.increment('lookup_misses', 4)

        stats.print_stats("MIXBRIDGE STATISTICS")

        out = capsys.readouterr().out
        assert "MIXBRIDGE STATISTICS" in out
        assert "Lookup Misses: 4" in out
