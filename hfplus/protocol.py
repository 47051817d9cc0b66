"""Wire-level definitions for the Airspy HF+ USB protocol."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntEnum

VERSION = "1.8.0"
VERSION_MAJOR = 1
VERSION_MINOR = 8
VERSION_REVISION = 0

USB_VID = 0x03EB
USB_PID = 0x800C

ENDPOINT_IN = 1
USB_ENDPOINT_DIR_IN = 0x80
CTRL_TIMEOUT_MS = 500

SAMPLES_TO_TRANSFER = 1024 * 2
BYTES_PER_SAMPLE = 4
BUFFER_SIZE = SAMPLES_TO_TRANSFER * BYTES_PER_SAMPLE
RAW_BUFFER_COUNT = 8
TRANSFER_COUNT = 16

SERIAL_NUMBER_UNUSED = 0
FILE_DESCRIPTOR_UNUSED = -1
SERIAL_SIZE = 28
SERIAL_PREFIX = b"AIRSPYHF SN:"

MAX_SAMPLERATE_INDEX = 100
DEFAULT_SAMPLERATE = 768000

DEFAULT_ATT_STEP_COUNT = 9
DEFAULT_ATT_STEP_INCREMENT = 6.0

CALIBRATION_MAGIC = 0xA5CA71B0
CONFIG_SIZE = 256

DEFAULT_IF_SHIFT = 5000
MIN_ZERO_IF_LO = 180
MIN_LOW_IF_LO = 84

INITIAL_PHASE = 0.00006
INITIAL_AMPLITUDE = -0.0045

IQ_BALANCER_EVAL_SKIP = RAW_BUFFER_COUNT

MAX_NAME_STRING_SIZE = 64
MAX_VERSION_STRING_SIZE = MAX_NAME_STRING_SIZE


class AirspyHFError(Exception):
    """Raised when the receiver or the USB link reports a failure."""


class UnsupportedError(AirspyHFError):
    """Raised for an operation that this platform does not support."""


class ReceiverMode(IntEnum):
    OFF = 0
    ON = 1


class VendorRequest(IntEnum):
    INVALID = 0
    RECEIVER_MODE = 1
    SET_FREQ = 2
    GET_SAMPLERATES = 3
    SET_SAMPLERATE = 4
    CONFIG_READ = 5
    CONFIG_WRITE = 6
    GET_SERIALNO_BOARDID = 7
    SET_USER_OUTPUT = 8
    GET_VERSION_STRING = 9
    SET_AGC = 10
    SET_AGC_THRESHOLD = 11
    SET_ATT = 12
    SET_LNA = 13
    GET_SAMPLERATE_ARCHITECTURES = 14
    GET_FILTER_GAIN = 15
    GET_FREQ_DELTA = 16
    SET_VCTCXO_CALIBRATION = 17
    SET_FRONTEND_OPTIONS = 18
    GET_ATT_STEPS = 19
    GET_BIAS_TEE_COUNT = 20
    GET_BIAS_TEE_NAME = 21
    SET_BIAS_TEE = 22


class BoardId(IntEnum):
    UNKNOWN_AIRSPYHF = 0
    AIRSPYHF_REV_A = 1
    AIRSPYHF_DISCOVERY_REV_A = 2
    INVALID = 0xFF


class UserOutput(IntEnum):
    OUTPUT_0 = 0
    OUTPUT_1 = 1
    OUTPUT_2 = 2
    OUTPUT_3 = 3


class UserOutputState(IntEnum):
    LOW = 0
    HIGH = 1


@dataclass(frozen=True)
class LibVersion:
    major_version: int
    minor_version: int
    revision: int

    def __str__(self) -> str:
        return f"{self.major_version}.{self.minor_version}.{self.revision}"


def lib_version() -> LibVersion:
    """Return the version of this library."""
    return LibVersion(VERSION_MAJOR, VERSION_MINOR, VERSION_REVISION)


def encode_freq_khz(freq_khz: int) -> bytes:
    """Encode a local-oscillator frequency in kHz as the 4-byte big-endian payload."""
    if not 0 <= freq_khz <= 0xFFFFFFFF:
        raise ValueError(f"frequency {freq_khz} kHz does not fit in 32 bits")
    return int(freq_khz).to_bytes(4, "big")


def decode_freq_delta(data: bytes) -> float:
    """Decode the frequency-delta reply into hertz.

    Byte 0 is a binary exponent; bytes 1..3 hold a signed little-endian
    24-bit value in kHz.
    """
    if len(data) != 4:
        raise AirspyHFError(f"frequency delta reply must be 4 bytes, got {len(data)}")
    mantissa = int.from_bytes(data[1:4], "little", signed=True)
    return mantissa * 1e3 / (1 << data[0])


_PARTID_FORMAT = struct.Struct("<5I")


@dataclass(frozen=True)
class PartIdSerialNo:
    part_id: int
    serial_no: tuple[int, int, int, int]

    SIZE = _PARTID_FORMAT.size

    @classmethod
    def from_bytes(cls, data: bytes) -> "PartIdSerialNo":
        """Parse the part-id/serial reply; a short reply is an error."""
        if len(data) < cls.SIZE:
            raise AirspyHFError(
                f"part id reply too short: {len(data)} of {cls.SIZE} bytes"
            )
        part_id, *serial = _PARTID_FORMAT.unpack_from(data)
        return cls(part_id, tuple(serial))


_FLASH_FORMAT = struct.Struct("<IiiI")


@dataclass(frozen=True)
class FlashConfig:
    calibration_ppb: int = 0
    calibration_vctcxo: int = 0
    frontend_options: int = 0
    magic_number: int = CALIBRATION_MAGIC

    SIZE = _FLASH_FORMAT.size

    @property
    def is_valid(self) -> bool:
        """True when the block carries the calibration magic number."""
        return self.magic_number == CALIBRATION_MAGIC

    @classmethod
    def from_bytes(cls, data: bytes) -> "FlashConfig":
        """Parse a configuration block; extra trailing bytes are ignored."""
        if len(data) < cls.SIZE:
            raise AirspyHFError(
                f"configuration block too short: {len(data)} of {cls.SIZE} bytes"
            )
        magic, ppb, vctcxo, options = _FLASH_FORMAT.unpack_from(data)
        return cls(ppb, vctcxo, options, magic)

    def to_bytes(self) -> bytes:
        """Serialise the block as stored in the device's flash."""
        return _FLASH_FORMAT.pack(
            self.magic_number,
            self.calibration_ppb,
            self.calibration_vctcxo,
            self.frontend_options,
        )