"""CAMS connection test scheduler."""

__version__ = "0.1.0"
