"""Capture, transcribe and export Kindle Cloud Reader books."""

__version__ = "0.1.0"
