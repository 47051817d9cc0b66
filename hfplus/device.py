"""High-level control of an Airspy HF+ receiver."""

from __future__ import annotations

import math
import struct
from collections.abc import Callable
from contextlib import suppress

import numpy as np

from .discovery import open_handle, open_handle_fd
from .dsp import FineTuner, convert_samples
from .iqbalancer import IQBalancer
from .protocol import (
    BUFFER_SIZE,
    CONFIG_SIZE,
    DEFAULT_ATT_STEP_COUNT,
    DEFAULT_ATT_STEP_INCREMENT,
    DEFAULT_IF_SHIFT,
    DEFAULT_SAMPLERATE,
    ENDPOINT_IN,
    INITIAL_AMPLITUDE,
    INITIAL_PHASE,
    IQ_BALANCER_EVAL_SKIP,
    MAX_NAME_STRING_SIZE,
    MAX_SAMPLERATE_INDEX,
    MAX_VERSION_STRING_SIZE,
    MIN_LOW_IF_LO,
    MIN_ZERO_IF_LO,
    SAMPLES_TO_TRANSFER,
    USB_ENDPOINT_DIR_IN,
    AirspyHFError,
    FlashConfig,
    PartIdSerialNo,
    ReceiverMode,
    UserOutput,
    UserOutputState,
    VendorRequest,
    decode_freq_delta,
    encode_freq_khz,
)
from .streaming import SampleBlock, StreamWorker
from .transport import UsbBackend, UsbHandle

_U32 = struct.Struct("<I")
_I32 = struct.Struct("<i")


def _round_half_away(value: float) -> int:
    if value >= 0:
        return math.floor(value + 0.5)
    return -math.floor(-value + 0.5)


def _c_string(data: bytes) -> str:
    return data.split(b"\0", 1)[0].decode("ascii", errors="replace")


class AirspyHF:
    """An open receiver: tuning, gain control, calibration and streaming."""

    def __init__(self, handle: UsbHandle) -> None:
        self._handle = handle
        self._closed = False
        self._worker: StreamWorker | None = None

        self._samplerates, self._architectures = self._load_samplerates()
        self._current_samplerate = self._samplerates[0]
        self._is_low_if = bool(self._architectures[0])
        self._att_steps = self._load_att_steps()

        self._freq_hz = 0.0
        self._freq_khz = 0
        self._freq_delta_hz = 0.0
        self._freq_shift = 0.0
        self._optimal_point = 0.0
        self._filter_gain = 1.0
        self._enable_dsp = True
        self._tuner = FineTuner()

        self._calibration_ppb = 0
        self._calibration_vctcxo = 0
        self._frontend_options = 0
        config = self._read_config()
        if config is not None and config.is_valid:
            self._calibration_ppb = config.calibration_ppb
            with suppress(AirspyHFError):
                self.set_vctcxo_calibration(config.calibration_vctcxo)
            with suppress(AirspyHFError):
                self.set_frontend_options(config.frontend_options)

        self._iq_balancer = IQBalancer(INITIAL_PHASE, INITIAL_AMPLITUDE)
        self._iq_balancer_eval_skip = 0

    # -- opening and closing -------------------------------------------------

    @classmethod
    def open(cls, backend: UsbBackend, serial_number: int | None = None) -> "AirspyHF":
        """Open the first receiver, or the one with ``serial_number``."""
        return cls._wrap(open_handle(backend, serial_number))

    @classmethod
    def open_fd(cls, backend: UsbBackend, fd: int) -> "AirspyHF":
        """Open a receiver from an already opened system file descriptor."""
        return cls._wrap(open_handle_fd(backend, fd))

    @classmethod
    def _wrap(cls, handle: UsbHandle) -> "AirspyHF":
        try:
            return cls(handle)
        except BaseException:
            handle.close()
            raise

    def close(self) -> None:
        """Stop streaming and release the device."""
        if self._closed:
            return
        self._closed = True
        try:
            self.stop()
        finally:
            self._handle.close()

    def __enter__(self) -> "AirspyHF":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # -- firmware queries made while opening ---------------------------------

    def _query_count(self, request: VendorRequest) -> int:
        data = self._handle.control_in(request, 0, 0, _U32.size)
        if len(data) < _U32.size:
            raise AirspyHFError(f"{request.name}: short count reply")
        count = _U32.unpack_from(data)[0]
        if count == 0:
            raise AirspyHFError(f"{request.name}: device reports no entries")
        return count

    def _query_table(self, request: VendorRequest, count: int, fmt: str) -> list:
        data = self._handle.control_in(request, 0, count & 0xFFFF, count * 4)
        layout = struct.Struct(f"<{count}{fmt}")
        if len(data) < layout.size:
            raise AirspyHFError(f"{request.name}: short table reply")
        return list(layout.unpack_from(data))

    def _load_samplerates(self) -> tuple[list[int], list[int]]:
        try:
            count = self._query_count(VendorRequest.GET_SAMPLERATES)
            rates = self._query_table(VendorRequest.GET_SAMPLERATES, count, "I")
        except AirspyHFError:
            return [DEFAULT_SAMPLERATE], [0]
        try:
            data = self._handle.control_in(
                VendorRequest.GET_SAMPLERATE_ARCHITECTURES, 0, count & 0xFFFF, count * 4
            )
            if len(data) < count:
                raise AirspyHFError("short architecture reply")
            architectures = list(data[:count])
        except AirspyHFError:
            architectures = [0] * count
        return rates, architectures

    def _load_att_steps(self) -> list[float]:
        try:
            count = self._query_count(VendorRequest.GET_ATT_STEPS)
            return [float(s) for s in self._query_table(VendorRequest.GET_ATT_STEPS, count, "f")]
        except AirspyHFError:
            return [i * DEFAULT_ATT_STEP_INCREMENT for i in range(DEFAULT_ATT_STEP_COUNT)]

    def _read_config(self) -> FlashConfig | None:
        try:
            data = self._handle.control_in(VendorRequest.CONFIG_READ, 0, 0, CONFIG_SIZE)
        except AirspyHFError:
            return None
        if len(data) < CONFIG_SIZE:
            return None
        return FlashConfig.from_bytes(data)

    def _control_out(self, request: VendorRequest, value: int = 0, index: int = 0,
                     data: bytes = b"") -> int:
        return self._handle.control_out(request, value & 0xFFFF, index & 0xFFFF, data)

    # -- state -------------------------------------------------------------

    @property
    def samplerate(self) -> int:
        """The sample rate currently selected, in samples per second."""
        return self._current_samplerate

    @property
    def freq_hz(self) -> float:
        """The frequency last tuned to."""
        return self._freq_hz

    @property
    def freq_shift(self) -> float:
        """The residual shift the fine tuner applies, in hertz."""
        return self._freq_shift

    @property
    def filter_gain(self) -> float:
        """Linear gain compensating the device's decimation filter."""
        return self._filter_gain

    def output_size(self) -> int:
        """Number of IQ samples in each block handed to the callback."""
        return SAMPLES_TO_TRANSFER

    def is_low_if(self) -> bool:
        """True if the current sample rate uses a low IF, False for zero IF."""
        return self._is_low_if

    def is_streaming(self) -> bool:
        return self._worker is not None and self._worker.is_running()

    # -- streaming ---------------------------------------------------------

    def start(self, callback: Callable[[SampleBlock], object]) -> None:
        """Start streaming; ``callback(block)`` returns a true value to stop."""
        if self._worker is not None and self._worker.is_running():
            raise AirspyHFError("streaming is already active")
        self._tuner.reset()
        self.set_receiver_mode(ReceiverMode.OFF)
        with suppress(AirspyHFError):
            self._handle.clear_halt(USB_ENDPOINT_DIR_IN | ENDPOINT_IN)
        self.set_receiver_mode(ReceiverMode.ON)
        if self._worker is not None:
            self._worker.stop()
        self._worker = StreamWorker(self._handle, BUFFER_SIZE, self.process_buffer, callback)
        self._worker.start()

    def stop(self) -> None:
        """Switch the receiver off and wait for the streaming threads."""
        try:
            self.set_receiver_mode(ReceiverMode.OFF)
        finally:
            if self._worker is not None:
                self._worker.stop()

    def process_buffer(self, raw, dropped_buffers: int = 0) -> SampleBlock:
        """Convert one raw USB buffer into a block of corrected samples."""
        samples = convert_samples(raw, self._filter_gain)
        skip_eval = False
        if self._iq_balancer_eval_skip > 0:
            self._iq_balancer_eval_skip -= 1
            skip_eval = True
        if self._enable_dsp:
            if not self._is_low_if:
                samples = self._iq_balancer.process(samples, skip_eval)
            if self._freq_shift != 0:
                samples = self._tuner.apply(samples, self._freq_shift, self._current_samplerate)
        samples = np.asarray(samples)
        return SampleBlock(samples, int(dropped_buffers) * int(samples.shape[0]))

    def set_receiver_mode(self, mode: ReceiverMode) -> None:
        if self._control_out(VendorRequest.RECEIVER_MODE, int(mode)) != 0:
            raise AirspyHFError("setting the receiver mode failed")

    # -- tuning ------------------------------------------------------------

    def set_freq(self, freq_hz: float) -> None:
        """Tune to ``freq_hz``; the remainder below 1 kHz is done in software."""
        if_shift = DEFAULT_IF_SHIFT if self._enable_dsp and not self._is_low_if else 0
        adjusted = freq_hz * (1.0e9 + self._calibration_ppb) * 1.0e-9
        lo_low = MIN_LOW_IF_LO if self._is_low_if else MIN_ZERO_IF_LO
        freq_khz = max(lo_low, _round_half_away((adjusted + if_shift) * 1e-3))

        if self._freq_khz != freq_khz:
            self._iq_balancer_eval_skip = IQ_BALANCER_EVAL_SKIP
            payload = encode_freq_khz(freq_khz)
            if self._control_out(VendorRequest.SET_FREQ, 0, 0, payload) < len(payload):
                raise AirspyHFError("setting the frequency failed")
            self._freq_khz = freq_khz
            with suppress(AirspyHFError):
                reply = self._handle.control_in(VendorRequest.GET_FREQ_DELTA, 0, 0, 4)
                if len(reply) == 4:
                    self._freq_delta_hz = decode_freq_delta(reply)
            self._iq_balancer.set_optimal_point(self._optimal_point)

        self._freq_hz = freq_hz
        self._freq_shift = adjusted - freq_khz * 1e3 + self._freq_delta_hz

    def set_lib_dsp(self, enabled: bool) -> None:
        """Enable or disable IQ correction, IF shift and fine tuning."""
        self._enable_dsp = bool(enabled)

    def samplerates(self) -> list[int]:
        return list(self._samplerates)

    def set_samplerate(self, samplerate: int) -> None:
        """Select a sample rate by value or by index into :meth:`samplerates`."""
        index = int(samplerate)
        if index > MAX_SAMPLERATE_INDEX and index in self._samplerates:
            index = self._samplerates.index(index)
        if not 0 <= index < len(self._samplerates):
            raise AirspyHFError(f"unsupported sample rate {samplerate}")

        self._current_samplerate = self._samplerates[index]
        self._is_low_if = bool(self._architectures[index])

        with suppress(AirspyHFError):
            self._handle.clear_halt(USB_ENDPOINT_DIR_IN | 1)

        if not self._is_low_if and self._freq_khz < MIN_ZERO_IF_LO:
            payload = encode_freq_khz(MIN_ZERO_IF_LO)
            if self._control_out(VendorRequest.SET_FREQ, 0, 0, payload) < len(payload):
                raise AirspyHFError("setting the frequency failed")
            self._freq_khz = MIN_ZERO_IF_LO

        if self._control_out(VendorRequest.SET_SAMPLERATE, 0, index) != 0:
            raise AirspyHFError("setting the sample rate failed")

        try:
            reply = self._handle.control_in(VendorRequest.GET_FILTER_GAIN, 0, 0, 1)
        except AirspyHFError:
            reply = b""
        self._filter_gain = 10.0 ** (reply[0] * -0.05) if len(reply) == 1 else 1.0

        with suppress(AirspyHFError):
            self.set_freq(self._freq_hz)

    # -- gain and front end ------------------------------------------------

    def att_steps(self) -> list[float]:
        return list(self._att_steps)

    def set_att(self, att: float) -> None:
        """Select the first attenuation step at or above ``att`` dB."""
        att_index = next((i for i, step in enumerate(self._att_steps) if step >= att), 0)
        self._control_out(VendorRequest.SET_ATT, att_index)

    def set_bias_tee(self, value: int) -> None:
        self._control_out(VendorRequest.SET_BIAS_TEE, int(value))

    def bias_tee_count(self) -> int:
        data = self._handle.control_in(
            VendorRequest.GET_BIAS_TEE_COUNT, 0, 0, PartIdSerialNo.SIZE
        )
        if len(data) < PartIdSerialNo.SIZE:
            raise AirspyHFError("short bias tee count reply")
        return _I32.unpack_from(data)[0]

    def bias_tee_name(self, index: int) -> str:
        data = self._handle.control_in(
            VendorRequest.GET_BIAS_TEE_NAME, 0, int(index) & 0xFFFF, MAX_NAME_STRING_SIZE - 1
        )
        return _c_string(data)

    # -- calibration -------------------------------------------------------

    def calibration(self) -> int:
        """Frequency correction in parts per billion."""
        return self._calibration_ppb

    def set_calibration(self, ppb: int) -> None:
        self._calibration_ppb = int(ppb)
        self.set_freq(self._freq_hz)

    def vctcxo_calibration(self) -> int:
        return self._calibration_vctcxo

    def set_vctcxo_calibration(self, vc: int) -> None:
        vc = int(vc) & 0xFFFF
        self._calibration_vctcxo = vc
        self._control_out(VendorRequest.SET_VCTCXO_CALIBRATION, vc)

    def frontend_options(self) -> int:
        return self._frontend_options

    def set_frontend_options(self, flags: int) -> None:
        flags = int(flags) & 0xFFFFFFFF
        self._frontend_options = flags
        self._control_out(VendorRequest.SET_FRONTEND_OPTIONS, flags & 0xFFFF, flags >> 16)

    def set_optimal_iq_correction_point(self, w: float) -> None:
        self._optimal_point = float(w)
        self._iq_balancer.set_optimal_point(self._optimal_point)

    def iq_balancer_configure(self, buffers_to_skip: int, fft_integration: int,
                              fft_overlap: int, correlation_integration: int) -> None:
        self._iq_balancer.configure(
            buffers_to_skip, fft_integration, fft_overlap, correlation_integration
        )

    def flash_configuration(self) -> None:
        """Store the calibration and front-end options in the device's flash."""
        if self.is_streaming():
            raise AirspyHFError("cannot write the configuration while streaming")
        config = FlashConfig(
            self._calibration_ppb, self._calibration_vctcxo, self._frontend_options
        )
        payload = config.to_bytes().ljust(CONFIG_SIZE, b"\0")
        if self._control_out(VendorRequest.CONFIG_WRITE, 0, 0, payload) < CONFIG_SIZE:
            raise AirspyHFError("writing the configuration failed")

    # -- identification ----------------------------------------------------

    def board_partid_serialno(self) -> PartIdSerialNo:
        data = self._handle.control_in(
            VendorRequest.GET_SERIALNO_BOARDID, 0, 0, PartIdSerialNo.SIZE
        )
        return PartIdSerialNo.from_bytes(data)

    def version_string(self) -> str:
        data = self._handle.control_in(
            VendorRequest.GET_VERSION_STRING, 0, 0, MAX_VERSION_STRING_SIZE - 1
        )
        return _c_string(data)

    # -- legacy controls ---------------------------------------------------

    def set_user_output(self, pin: UserOutput, value: UserOutputState) -> None:
        self._control_out(VendorRequest.SET_USER_OUTPUT, int(pin), int(value))

    def set_hf_agc(self, flag: int) -> None:
        self._control_out(VendorRequest.SET_AGC, int(flag))

    def set_hf_agc_threshold(self, flag: int) -> None:
        self._control_out(VendorRequest.SET_AGC_THRESHOLD, int(flag))

    def set_hf_att(self, att_index: int) -> None:
        self._control_out(VendorRequest.SET_ATT, int(att_index))

    def set_hf_lna(self, flag: int) -> None:
        self._control_out(VendorRequest.SET_LNA, int(flag))