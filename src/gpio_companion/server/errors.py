"""
Error taxonomy for the bridge.

Only StorageUnavailable is fatal (at startup). Every other error is logged
and the offending message or event is dropped.
"""


class BridgeError(Exception):
    """Base class for all bridge errors."""


class StorageUnavailable(BridgeError):
    """The board identity store could not be read or written."""


class BrokerConnectionError(BridgeError):
    """The broker session could not be established or was lost."""


class DecodeError(BridgeError):
    """An inbound payload could not be turned into a PinCommand."""


class UnsupportedAction(BridgeError):
    """A decoded command carries an action the dispatcher does not handle."""


class PublishError(BridgeError):
    """An outbound message could not be queued or sent."""


class PinError(BridgeError):
    """A pin could not be opened, written or read."""


class UnregisteredPin(PinError):
    """An event referenced a pin that has not been registered."""
