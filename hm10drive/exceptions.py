"""Exceptions raised by transports and caught by the LinkManager."""


class TransportError(Exception):
    """Base class for transport failures"""


class TransportUnavailable(TransportError):
    """Radio is powered off, unauthorized or unsupported"""


class TransportWriteError(TransportError):
    """A write to the peripheral could not be issued"""
