"""Modbus request handling through user callbacks, with a Modbus/TCP server."""

__version__ = "0.1.0"
__all__ = ["protocol", "tcp"]