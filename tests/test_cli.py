"""
Tests for the one-shot OSC command line tool
"""

from unittest.mock import patch

import pytest

from mixbridge import cli


class TestParseArgument:
    """Test argument type inference."""

    def test_types(self):
        assert cli.parse_argument("1") == 1
        assert isinstance(cli.parse_argument("1"), int)
        assert cli.parse_argument("0.75") == 0.75
        assert cli.parse_argument("on") == "on"


class TestMain:
    """Test the command line entry point."""

    @patch('mixbridge.cli.udp_client.SimpleUDPClient')
    def test_sends_to_mixer(self, mock_client, capsys):
        cli.main(["--host", "127.0.0.1", "/ch/01/mix/fader", "0.75"])

        mock_client.assert_called_once_with("127.0.0.1", 10024)
        mock_client.return_value.send_message.assert_called_once_with("/ch/01/mix/fader", [0.75])
        assert "/ch/01/mix/fader" in capsys.readouterr().out

    @patch('mixbridge.cli.udp_client.SimpleUDPClient')
    def test_rejects_relative_address(self, mock_client):
        with pytest.raises(SystemExit):
            cli.main(["ch/01/mix/on", "1"])
        mock_client.assert_not_called()

    def test_rejects_invalid_port(self):
        with pytest.raises(ValueError):
            cli.send_osc_message("/xremote", [], port=0)
