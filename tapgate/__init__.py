"""NFC-tag gated session handshake: setup proof -> session token."""

__version__ = "0.1.0"
