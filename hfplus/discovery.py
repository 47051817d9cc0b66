"""Finding and opening receivers on the USB bus."""

from __future__ import annotations

import re

from .protocol import SERIAL_NUMBER_UNUSED, SERIAL_PREFIX, SERIAL_SIZE, AirspyHFError
from .transport import UsbBackend, UsbHandle, configure_handle

_ULL_MASK = (1 << 64) - 1
_HEX_NUMBER = re.compile(r"\s*([+-]?)(?:0[xX](?=[0-9a-fA-F]))?([0-9a-fA-F]+)")


def _parse_hex_ull(text: str) -> int | None:
    """Parse a leading unsigned 64-bit hex number; None if there are no digits."""
    match = _HEX_NUMBER.match(text)
    if match is None:
        return None
    sign, digits = match.groups()
    value = int(digits, 16)
    if value > _ULL_MASK:
        return _ULL_MASK
    if sign == "-":
        value = -value & _ULL_MASK
    return value


def parse_serial(text: str | bytes) -> int | None:
    """Extract the serial number from a serial string descriptor.

    The descriptor is read into a buffer of ``SERIAL_SIZE`` characters, so
    longer text is cut to that length. It must then be exactly that long,
    start with the serial prefix and be followed by a hexadecimal number.
    Returns None when the text is not a receiver serial.
    """
    if isinstance(text, bytes):
        text = text.decode("ascii", errors="replace")
    text = text[:SERIAL_SIZE]
    prefix = SERIAL_PREFIX.decode("ascii")
    if len(text) != SERIAL_SIZE or not text.startswith(prefix):
        return None
    return _parse_hex_ull(text[len(prefix):])


def _read_serial(handle: UsbHandle, index: int) -> int | None:
    try:
        return parse_serial(handle.get_string_descriptor(index))
    except AirspyHFError:
        return None


def list_devices(backend: UsbBackend, count: int | None = None) -> list[int]:
    """Return the serial numbers of attached receivers, at most ``count`` of them."""
    serials: list[int] = []
    for descriptor in backend.devices():
        if count is not None and len(serials) >= count:
            break
        if not descriptor.is_airspyhf or descriptor.serial_index <= 0:
            continue
        try:
            handle = backend.open(descriptor)
        except AirspyHFError:
            continue
        with handle:
            serial = _read_serial(handle, descriptor.serial_index)
        if serial is not None:
            serials.append(serial)
    return serials


def open_handle(backend: UsbBackend, serial_number: int | None = None) -> UsbHandle:
    """Open and configure a receiver.

    With no serial number (or zero) the first receiver that can be opened is
    used; otherwise the one whose serial matches.
    """
    wanted = SERIAL_NUMBER_UNUSED if serial_number is None else serial_number
    for descriptor in backend.devices():
        if not descriptor.is_airspyhf:
            continue
        if wanted != SERIAL_NUMBER_UNUSED and descriptor.serial_index <= 0:
            continue
        try:
            handle = backend.open(descriptor)
        except AirspyHFError:
            continue
        if wanted != SERIAL_NUMBER_UNUSED:
            if _read_serial(handle, descriptor.serial_index) != wanted:
                handle.close()
                continue
        try:
            return configure_handle(handle)
        except AirspyHFError:
            continue
    if wanted == SERIAL_NUMBER_UNUSED:
        raise AirspyHFError("no receiver found")
    raise AirspyHFError(f"no receiver with serial {wanted:016X} found")


def open_handle_fd(backend: UsbBackend, fd: int) -> UsbHandle:
    """Open and configure a receiver from an already opened file descriptor."""
    handle = backend.wrap_fd(fd)
    if handle is None:
        raise AirspyHFError(f"cannot wrap file descriptor {fd}")
    return configure_handle(handle)