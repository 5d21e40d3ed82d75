"""Firmware API quota monitor: refresh engine plus terminal and desktop views."""

__version__ = "0.3.0"
