"""Pytest fixtures for integration tests.

Provides:
- mixer_capture: Fake mixer endpoint on a free loopback port
- mixer_link: MixerLink connected to mixer_capture, closed on teardown

All fixtures handle cleanup automatically via pytest's fixture system.
"""

import pytest

from mixbridge.osc import MixerLink
from tests.integration.utils import OSCMessageCapture


@pytest.fixture
def mixer_capture():
    """Fake mixer capturing everything the bridge sends.

    Yields:
        OSCMessageCapture: Capture with wait_for_message() and reply()
    """
    capture = OSCMessageCapture()
    capture.start()
    yield capture
    capture.stop()


@pytest.fixture
def mixer_link(mixer_capture):
    """Open MixerLink pointed at the fake mixer with keep-alive enabled."""
    link = MixerLink("127.0.0.1", mixer_capture.port, local_port=0, keepalive_interval=0.1)
    link.open()
    yield link
    link.close()
