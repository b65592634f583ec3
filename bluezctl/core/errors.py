"""Domain-specific errors for bluezctl."""

from __future__ import annotations

from bluezctl.core import interfaces


class BluezctlError(Exception):
    """Base error for bluezctl."""


class NotFoundError(BluezctlError):
    """Raised when an identifier never existed or has been invalidated."""


class AdapterNotFoundError(NotFoundError):
    """Raised when an adapter identifier is unknown."""


class UuidNotFoundError(NotFoundError):
    """Raised when no service or characteristic carries the requested UUID."""


class AmbiguousDeviceError(BluezctlError):
    """Raised when a device hint matches more than one known device."""


class NotReadyError(BluezctlError):
    """Raised when the owning device is not connected or GATT is not resolved."""


class NotConnectedError(BluezctlError):
    """Raised when a device drops its connection during an in-flight operation."""


class OperationNotSupportedError(BluezctlError):
    """Raised when a characteristic lacks the requested capability."""


class OperationTimeoutError(BluezctlError):
    """Raised when a request does not complete before its deadline."""


class NoBluetoothAdaptersError(BluezctlError):
    """Raised when an operation needs an adapter and none are present."""


class InvalidAddressError(BluezctlError, ValueError):
    """Raised when a string is not a valid Bluetooth MAC address."""


class InvalidUuidError(BluezctlError, ValueError):
    """Raised when a string is not a valid Bluetooth UUID."""


class InvalidFlagError(BluezctlError, ValueError):
    """Raised when a characteristic flag string is not recognised."""


class ConfigLoadError(BluezctlError):
    """Raised when reading configuration sources fails."""


class ConfigValidationError(BluezctlError):
    """Raised when a configuration file does not conform to schema or semantics."""


class TransportError(BluezctlError):
    """Raised when the IPC connection to the daemon is unavailable."""


class DaemonError(BluezctlError):
    """Failure reported by the Bluetooth daemon itself, passed through as-is."""

    def __init__(self, name: str, message: str = "") -> None:
        super().__init__(f"{name}: {message}" if message else name)
        self.name = name
        self.message = message


class AdapterBusyError(DaemonError):
    """Raised when the daemon reports an operation already in progress."""


def map_daemon_error(name: str, message: str = "") -> BluezctlError:
    """Translate a daemon error reply into the bluezctl error taxonomy."""
    text = message or ""
    if name == interfaces.ERROR_NOT_CONNECTED or (
        name == interfaces.ERROR_FAILED and "not connected" in text.lower()
    ):
        return NotConnectedError(text or "Device is not connected")
    if name == interfaces.ERROR_NOT_SUPPORTED:
        return OperationNotSupportedError(text or "Operation not supported by the device")
    if name == interfaces.ERROR_NO_REPLY:
        return OperationTimeoutError(text or "No reply from the Bluetooth daemon")
    if name == interfaces.ERROR_UNKNOWN_OBJECT:
        return NotFoundError(text or "Object no longer exists at the daemon")
    if name in (interfaces.ERROR_IN_PROGRESS, interfaces.ERROR_BUSY):
        return AdapterBusyError(name, text)
    return DaemonError(name, text)
