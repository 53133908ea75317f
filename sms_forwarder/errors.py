"""
Exception types raised by the forwarder components.

Only NotFoundError and InvalidInputError ever reach an HTTP caller, as 404 and
400 respectively. TransportError and PersistenceError are caught and logged by
the component that raised them.
"""


class ForwarderError(Exception):
    """Base class for all forwarder errors."""


class ConfigurationError(ForwarderError):
    """Required configuration is missing or invalid. Fatal at startup."""


class NotFoundError(ForwarderError):
    """A lookup by key found nothing."""

    def __init__(self, resource: str, key: str):
        self.resource = resource
        self.key = key
        super().__init__(f"{resource} not found")


class InvalidInputError(ForwarderError):
    """Caller supplied input that cannot be accepted."""


class TransportError(ForwarderError):
    """An outbound HTTP call failed or returned a non-2xx status."""


class PersistenceError(ForwarderError):
    """A backing file could not be written."""
