"""Abstract USB transport used to talk to the receiver.

A concrete backend wraps whatever USB stack is available. Every method
reports a failure by raising :class:`~hfplus.protocol.AirspyHFError`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from .protocol import USB_PID, USB_VID, AirspyHFError, UnsupportedError

CONFIGURATION = 1
INTERFACE = 0
ALT_SETTING = 1


@dataclass(frozen=True)
class DeviceDescriptor:
    """The parts of a USB device descriptor that discovery looks at."""

    vendor_id: int
    product_id: int
    serial_index: int = 0
    ref: Any = field(default=None, compare=False)

    @property
    def is_airspyhf(self) -> bool:
        """True when the vendor and product ids are those of the receiver."""
        return self.vendor_id == USB_VID and self.product_id == USB_PID


class UsbHandle(ABC):
    """An open USB device."""

    @abstractmethod
    def control_in(self, request: int, value: int, index: int, length: int) -> bytes:
        """Perform a vendor IN control transfer and return the bytes received."""

    @abstractmethod
    def control_out(self, request: int, value: int, index: int, data: bytes) -> int:
        """Perform a vendor OUT control transfer and return the bytes sent."""

    @abstractmethod
    def read_bulk(self, endpoint: int, length: int, timeout: float | None) -> bytes:
        """Read up to ``length`` bytes from a bulk IN endpoint."""

    @abstractmethod
    def clear_halt(self, endpoint: int) -> None:
        """Clear a halt condition on an endpoint."""

    @abstractmethod
    def get_string_descriptor(self, index: int) -> str:
        """Return a string descriptor as ASCII text."""

    @abstractmethod
    def set_configuration(self, configuration: int) -> None:
        """Select the active configuration."""

    @abstractmethod
    def claim_interface(self, interface: int) -> None:
        """Claim an interface for exclusive use."""

    @abstractmethod
    def set_alt_setting(self, interface: int, alt_setting: int) -> None:
        """Select an alternate setting on a claimed interface."""

    @abstractmethod
    def close(self) -> None:
        """Release the device."""

    def __enter__(self) -> "UsbHandle":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


class UsbBackend(ABC):
    """A source of USB devices."""

    @abstractmethod
    def devices(self) -> Iterable[DeviceDescriptor]:
        """Enumerate the devices currently attached."""

    @abstractmethod
    def open(self, descriptor: DeviceDescriptor) -> UsbHandle:
        """Open the device described by ``descriptor``."""

    def wrap_fd(self, fd: int) -> UsbHandle:
        """Wrap an already opened system file descriptor.

        Backends that cannot do this keep the default, which raises
        :class:`UnsupportedError`.
        """
        raise UnsupportedError("opening a device from a file descriptor is not supported")


def configure_handle(handle: UsbHandle) -> UsbHandle:
    """Select the configuration, claim the interface and pick the alt setting.

    On failure the handle is closed and the error is re-raised.
    """
    try:
        handle.set_configuration(CONFIGURATION)
        handle.claim_interface(INTERFACE)
        handle.set_alt_setting(INTERFACE, ALT_SETTING)
    except AirspyHFError:
        handle.close()
        raise
    return handle