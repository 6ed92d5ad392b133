"""Scan kiosk controller: drives face-scan sessions against a remote recognition service."""

__version__ = "0.1.0"
