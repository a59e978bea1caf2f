"""Integration tests running the bridge against a fake mixer on loopback."""

from .utils import OSCMessageCapture

__all__ = [
    'OSCMessageCapture',
]
