import pytest

from hfplus.discovery import list_devices, open_handle, open_handle_fd, parse_serial
from hfplus.protocol import USB_PID, USB_VID, AirspyHFError, UnsupportedError
from hfplus.transport import DeviceDescriptor, UsbBackend, UsbHandle

SERIAL_A = "AIRSPYHF SN:00000000DEADBEEF"
SERIAL_B = "AIRSPYHF SN:000000000000CAFE"


class FakeHandle(UsbHandle):
    def __init__(self, serial_text, fail_configure=False):
        self.serial_text = serial_text
        self.fail_configure = fail_configure
        self.closed = False
        self.configured = False

    def control_in(self, request, value, index, length):
        return bytes(length)

    def control_out(self, request, value, index, data):
        return len(data)

    def read_bulk(self, endpoint, length, timeout):
        return bytes(length)

    def clear_halt(self, endpoint):
        pass

    def get_string_descriptor(self, index):
        if self.serial_text is None:
            raise AirspyHFError("descriptor read failed")
        return self.serial_text

    def set_configuration(self, configuration):
        if self.fail_configure:
            raise AirspyHFError("busy")

    def claim_interface(self, interface):
        pass

    def set_alt_setting(self, interface, alt_setting):
        self.configured = True

    def close(self):
        self.closed = True


class FakeBackend(UsbBackend):
    def __init__(self, entries, fd_handle=None):
        # entries: list of (descriptor, handle or None when open fails)
        self.entries = entries
        self.fd_handle = fd_handle
        self.opened = []

    def devices(self):
        return [descriptor for descriptor, _ in self.entries]

    def open(self, descriptor):
        for known, handle in self.entries:
            if known.ref == descriptor.ref:
                if handle is None:
                    raise AirspyHFError("open failed")
                self.opened.append(handle)
                return handle
        raise AirspyHFError("unknown device")

    def wrap_fd(self, fd):
        if self.fd_handle is None:
            return super().wrap_fd(fd)
        return self.fd_handle


def receiver(ref, serial_index=3):
    return DeviceDescriptor(USB_VID, USB_PID, serial_index, ref=ref)


def test_parse_serial_valid():
    assert parse_serial(SERIAL_A) == 0xDEADBEEF
    assert parse_serial(SERIAL_B.encode("ascii")) == 0xCAFE


def test_parse_serial_wrong_prefix_or_length():
    assert parse_serial("AIRSPYXX SN:00000000DEADBEEF") is None
    assert parse_serial("AIRSPYHF SN:DEADBEEF") is None
    assert parse_serial("") is None


def test_parse_serial_truncates_long_text():
    assert parse_serial(SERIAL_A + "FF") == parse_serial(SERIAL_A)


def test_parse_serial_without_digits():
    assert parse_serial("AIRSPYHF SN:ZZZZZZZZZZZZZZZZ") is None


def test_parse_serial_stops_at_non_hex():
    assert parse_serial("AIRSPYHF SN:00000000BEEFZZZZ") == 0xBEEF


def test_list_devices_filters_and_closes():
    a, b = FakeHandle(SERIAL_A), FakeHandle(SERIAL_B)
    other = FakeHandle(SERIAL_A)
    backend = FakeBackend(
        [
            (receiver("a"), a),
            (DeviceDescriptor(0x1234, 0x5678, 3, ref="x"), other),
            (receiver("b"), b),
        ]
    )
    assert list_devices(backend) == [0xDEADBEEF, 0xCAFE]
    assert a.closed and b.closed
    assert other not in backend.opened


def test_list_devices_respects_count():
    backend = FakeBackend(
        [(receiver("a"), FakeHandle(SERIAL_A)), (receiver("b"), FakeHandle(SERIAL_B))]
    )
    assert list_devices(backend, 1) == [0xDEADBEEF]
    assert list_devices(backend, 0) == []


def test_list_devices_skips_failures():
    backend = FakeBackend(
        [
            (receiver("a"), None),
            (receiver("bad"), FakeHandle("garbage")),
            (receiver("err"), FakeHandle(None)),
            (receiver("noidx", serial_index=0), FakeHandle(SERIAL_A)),
            (receiver("b"), FakeHandle(SERIAL_B)),
        ]
    )
    assert list_devices(backend) == [0xCAFE]


def test_open_handle_first_available():
    first = FakeHandle(SERIAL_A, fail_configure=True)
    second = FakeHandle(SERIAL_B)
    backend = FakeBackend([(receiver("a"), first), (receiver("b"), second)])
    handle = open_handle(backend)
    assert handle is second
    assert second.configured is True
    assert first.closed is True


def test_open_handle_by_serial():
    a, b = FakeHandle(SERIAL_A), FakeHandle(SERIAL_B)
    backend = FakeBackend([(receiver("a"), a), (receiver("b"), b)])
    handle = open_handle(backend, 0xCAFE)
    assert handle is b
    assert a.closed is True
    assert b.closed is False


def test_open_handle_no_match_raises():
    backend = FakeBackend([(receiver("a"), FakeHandle(SERIAL_A))])
    with pytest.raises(AirspyHFError):
        open_handle(backend, 0x1234)
    with pytest.raises(AirspyHFError):
        open_handle(FakeBackend([]))


def test_open_handle_fd_unsupported():
    with pytest.raises(UnsupportedError):
        open_handle_fd(FakeBackend([]), 7)


def test_open_handle_fd_configures():
    handle = FakeHandle(SERIAL_A)
    assert open_handle_fd(FakeBackend([], fd_handle=handle), 7) is handle
    assert handle.configured is True


def test_open_handle_fd_configure_failure():
    handle = FakeHandle(SERIAL_A, fail_configure=True)
    with pytest.raises(AirspyHFError):
        open_handle_fd(FakeBackend([], fd_handle=handle), 7)
    assert handle.closed is True