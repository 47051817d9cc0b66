"""Blind IQ imbalance estimation and correction for zero-IF sample streams.

The balancer removes the DC offset, gathers DC-free samples into a working
buffer and, from time to time, estimates the phase and amplitude mismatch
between the I and Q branches. It does this by looking at the correlation
between mirror-image FFT bins. The current estimate is applied to every
block, interpolated from the previous one.
"""

from __future__ import annotations

from collections import deque
from itertools import takewhile

import numpy as np

FFT_BINS = 4 * 1024
BOOST_FACTOR = 100000.0
BINS_TO_OPTIMIZE = FFT_BINS // 25
EDGE_BINS_TO_SKIP = FFT_BINS // 22
CENTER_BINS_TO_SKIP = 2
MAX_LOOKBACK = 4
PHASE_STEP = 1e-2
AMPLITUDE_STEP = 1e-2
MAX_MU = 50.0
MIN_DELTA_MU = 0.1
DC_TIME_CONST = 1e-4
MINIMUM_POWER = 0.01
POWER_THRESHOLD = 0.5
BUFFERS_TO_SKIP_ON_RESET = 2
MAX_POWER_DECAY = 0.98
MAX_POWER_RATIO = 0.8
BOOST_WINDOW_NORM = MAX_POWER_RATIO / 95
EPSILON = 0.01

BUFFERS_TO_SKIP = 2
FFT_INTEGRATION = 4
FFT_OVERLAP = 2
CORRELATION_INTEGRATION = 16

WORKING_BUFFER_LENGTH = FFT_BINS * (1 + FFT_INTEGRATION // FFT_OVERLAP)

_CENTER_BIN = FFT_BINS // 2
_DC_CHUNK = 4096


def _make_fft_window() -> np.ndarray:
    length = FFT_BINS - 1
    x = np.pi * np.arange(FFT_BINS) / length
    window = (
        0.35875
        - 0.48829 * np.cos(2.0 * x)
        + 0.14128 * np.cos(4.0 * x)
        - 0.01168 * np.cos(6.0 * x)
    )
    window.flags.writeable = False
    return window


def _make_boost_window() -> np.ndarray:
    i = np.arange(FFT_BINS)
    window = 1.0 / BOOST_FACTOR + np.exp(-((i * 2.0 / BINS_TO_OPTIMIZE) ** 2))
    window.flags.writeable = False
    return window


_FFT_WINDOW = _make_fft_window()
_BOOST_WINDOW = _make_boost_window()

# Bins that take part in the mirror-image correlation, and their mirrors.
_CORR_BINS = np.arange(EDGE_BINS_TO_SKIP, FFT_BINS - EDGE_BINS_TO_SKIP + 1)
_CORR_MIRRORS = FFT_BINS - _CORR_BINS
# Every bin pair is visited twice (once from each side), the centre bin once.
_CORR_MULT = np.where(_CORR_BINS == _CENTER_BIN, 1.0, 2.0)

_distance = np.abs(_CORR_BINS - _CENTER_BIN)
_util_mask = _distance > CENTER_BINS_TO_SKIP
_UTIL_BINS = _CORR_BINS[_util_mask]
_UTIL_MIRRORS = FFT_BINS - _UTIL_BINS
_UTIL_BASE_WEIGHT = np.where(
    _distance > EDGE_BINS_TO_SKIP, 1.0, _distance / EDGE_BINS_TO_SKIP
)[_util_mask]


def fft_window() -> np.ndarray:
    """Return the 4-term Blackman-Harris window applied before each FFT."""
    return _FFT_WINDOW.copy()


def boost_window() -> np.ndarray:
    """Return the Gaussian weighting used around the optimal correction point."""
    return _BOOST_WINDOW.copy()


def shifted_fft(buffer) -> np.ndarray:
    """Forward FFT with the zero frequency moved to the middle of the result.

    The length must be a power of two.
    """
    data = np.asarray(buffer, dtype=np.complex128)
    if data.ndim != 1:
        raise ValueError("FFT input must be one-dimensional")
    n = data.shape[0]
    if n < 1 or n & (n - 1):
        raise ValueError(f"FFT length must be a power of two, got {n}")
    return np.fft.fftshift(np.fft.fft(data))


def _apply_correction(iq: np.ndarray, phase, amplitude) -> np.ndarray:
    re = iq.real
    im = iq.imag
    return (re + phase * im) * (1.0 + amplitude) + 1j * (
        (im + phase * re) * (1.0 - amplitude)
    )


def _secant_step(a: float, b: float) -> float:
    delta = a - b
    if abs(delta) <= MIN_DELTA_MU:
        return 0.0
    return min(max(a / delta, -MAX_MU), MAX_MU)


class IQBalancer:
    """Tracks and corrects the IQ phase and amplitude imbalance of a stream."""

    def __init__(self, initial_phase: float, initial_amplitude: float) -> None:
        self._phase = float(initial_phase)
        self._amplitude = float(initial_amplitude)
        self._last_phase = 0.0
        self._last_amplitude = 0.0

        self._dc = 0j
        self._integrated_total_power = 0.0
        self._integrated_image_power = 0.0
        self._maximum_image_power = 0.0

        self._history: deque[tuple[float, float]] = deque(maxlen=MAX_LOOKBACK)

        self._skipped_buffers = 0
        self._buffers_to_skip = BUFFERS_TO_SKIP
        self._working_buffer_pos = 0
        self._fft_integration = FFT_INTEGRATION
        self._fft_overlap = FFT_OVERLAP
        self._correlation_integration = CORRELATION_INTEGRATION

        self._no_of_avg = 0
        self._optimal_bin = _CENTER_BIN
        self._reset_flag = False
        self._power_flag = [False] * self._fft_integration

        self._corr = np.zeros(FFT_BINS, dtype=np.complex128)
        self._corr_plus = np.zeros(FFT_BINS, dtype=np.complex128)
        self._working_buffer = np.zeros(WORKING_BUFFER_LENGTH, dtype=np.complex128)
        self._boost = np.zeros(FFT_BINS, dtype=np.float64)

    @property
    def phase(self) -> float:
        """Current phase correction estimate."""
        return self._phase

    @property
    def amplitude(self) -> float:
        """Current amplitude correction estimate."""
        return self._amplitude

    @property
    def optimal_bin(self) -> int:
        """FFT bin around which the correction is optimised."""
        return self._optimal_bin

    def set_optimal_point(self, w: float) -> None:
        """Move the optimisation point; ``w`` is clamped to [-0.5, 0.5] of the band."""
        w = min(max(float(w), -0.5), 0.5)
        self._optimal_bin = int(np.floor(FFT_BINS * (0.5 + w)))
        self._reset_flag = True

    def configure(
        self,
        buffers_to_skip: int,
        fft_integration: int,
        fft_overlap: int,
        correlation_integration: int,
    ) -> None:
        """Change how often and over how much data the imbalance is estimated."""
        if fft_overlap < 1:
            raise ValueError(f"fft_overlap must be at least 1, got {fft_overlap}")
        if fft_integration < 0:
            raise ValueError(
                f"fft_integration must not be negative, got {fft_integration}"
            )
        self._buffers_to_skip = int(buffers_to_skip)
        self._fft_integration = int(fft_integration)
        self._fft_overlap = int(fft_overlap)
        self._correlation_integration = int(correlation_integration)
        self._power_flag = [False] * self._fft_integration
        self._reset_flag = True

    def process(self, iq, skip_eval: bool = False) -> np.ndarray:
        """Remove DC and correct the imbalance of one block of samples.

        With ``skip_eval`` the DC estimate is frozen and no samples are
        collected for imbalance estimation. Returns a new array with the
        dtype of a complex input, complex128 otherwise.
        """
        data = np.asarray(iq)
        out_dtype = data.dtype if np.iscomplexobj(data) else np.dtype(np.complex128)
        samples = np.array(data, dtype=np.complex128).reshape(-1)

        samples = self._cancel_dc(samples, skip_eval)
        if not skip_eval:
            self._collect(samples)
        return self._adjust_phase_amplitude(samples).astype(out_dtype, copy=False)

    def _cancel_dc(self, iq: np.ndarray, skip_eval: bool) -> np.ndarray:
        if skip_eval or iq.size == 0:
            return iq - self._dc
        decay = 1.0 - DC_TIME_CONST
        out = np.empty_like(iq)
        average = self._dc
        for start in range(0, iq.size, _DC_CHUNK):
            chunk = iq[start : start + _DC_CHUNK]
            powers = decay ** np.arange(1, chunk.size + 1)
            averages = powers * (average + DC_TIME_CONST * np.cumsum(chunk / powers))
            out[start : start + chunk.size] = chunk - averages
            average = averages[-1]
        self._dc = complex(average)
        return out

    def _collect(self, iq: np.ndarray) -> None:
        count = min(WORKING_BUFFER_LENGTH - self._working_buffer_pos, iq.size)
        pos = self._working_buffer_pos
        self._working_buffer[pos : pos + count] = iq[:count]
        self._working_buffer_pos += count
        if self._working_buffer_pos >= WORKING_BUFFER_LENGTH:
            self._working_buffer_pos = 0
            self._skipped_buffers += 1
            if self._skipped_buffers > self._buffers_to_skip:
                self._skipped_buffers = 0
                self._estimate_imbalance(self._working_buffer)

    def _adjust_phase_amplitude(self, iq: np.ndarray) -> np.ndarray:
        length = iq.size
        if length > 1:
            frac = np.arange(length) / (length - 1)
        else:
            frac = np.zeros(length)
        phase = frac * self._last_phase + (1.0 - frac) * self._phase
        amplitude = frac * self._last_amplitude + (1.0 - frac) * self._amplitude
        result = _apply_correction(iq, phase, amplitude)
        self._last_phase = self._phase
        self._last_amplitude = self._amplitude
        return result

    def _frame_starts(self, length: int):
        hop = FFT_BINS // self._fft_overlap
        last = length - FFT_BINS
        return takewhile(
            lambda n: n <= last, (m * hop for m in range(self._fft_integration))
        )

    def _compute_corr(self, iq: np.ndarray, ccorr: np.ndarray, step: int) -> int:
        phase = self._phase + step * PHASE_STEP
        amplitude = self._amplitude + step * AMPLITUDE_STEP
        count = 0
        for m, n in enumerate(self._frame_starts(iq.size)):
            segment = iq[n : n + FFT_BINS]
            adjusted = _apply_correction(segment, phase, amplitude)
            if step == 0:
                power = float(np.sum(segment.real**2 + segment.imag**2))
                self._power_flag[m] = power > MINIMUM_POWER
                if self._power_flag[m]:
                    self._integrated_total_power += power
            if not self._power_flag[m]:
                continue
            count += 1
            spectrum = shifted_fft(adjusted * _FFT_WINDOW)
            bins = spectrum[_CORR_BINS]
            ccorr[_CORR_BINS] += bins * spectrum[_CORR_MIRRORS] * _CORR_MULT
            if step == 0:
                bin_power = bins.real**2 + bins.imag**2
                self._boost[_CORR_BINS] += bin_power
                if self._optimal_bin == _CENTER_BIN:
                    self._integrated_image_power += float(np.sum(bin_power))
                else:
                    weights = _BOOST_WINDOW[
                        np.abs(FFT_BINS - _CORR_BINS - self._optimal_bin)
                    ]
                    self._integrated_image_power += float(np.sum(bin_power * weights))
        return count

    def _utility(self, ccorr: np.ndarray) -> complex:
        weight = _UTIL_BASE_WEIGHT
        if self._optimal_bin != _CENTER_BIN:
            weight = weight * _BOOST_WINDOW[np.abs(self._optimal_bin - _UTIL_BINS)]
        weight = weight * self._boost[_UTIL_MIRRORS] / (self._boost[_UTIL_BINS] + EPSILON)
        return complex(np.sum(ccorr[_UTIL_BINS] * weight))

    def _estimate_imbalance(self, iq: np.ndarray) -> None:
        if self._reset_flag:
            self._reset_flag = False
            self._no_of_avg = -BUFFERS_TO_SKIP_ON_RESET
            self._maximum_image_power = 0.0

        if self._no_of_avg < 0:
            self._no_of_avg += 1
            return
        if self._no_of_avg == 0:
            self._integrated_image_power = 0.0
            self._integrated_total_power = 0.0
            self._boost.fill(0.0)
            self._corr.fill(0)
            self._corr_plus.fill(0)

        self._maximum_image_power *= MAX_POWER_DECAY

        count = self._compute_corr(iq, self._corr, 0)
        if count == 0:
            return
        self._no_of_avg += count
        self._compute_corr(iq, self._corr_plus, 1)

        if self._no_of_avg <= self._correlation_integration * self._fft_integration:
            return
        self._no_of_avg = 0

        if self._optimal_bin == _CENTER_BIN:
            if self._integrated_total_power < self._maximum_image_power:
                return
            self._maximum_image_power = self._integrated_total_power
        else:
            image = (
                self._integrated_image_power
                - self._integrated_total_power * BOOST_WINDOW_NORM
            )
            if image < self._maximum_image_power * POWER_THRESHOLD:
                return
            self._maximum_image_power = image

        a = self._utility(self._corr)
        b = self._utility(self._corr_plus)

        phase = self._phase + PHASE_STEP * _secant_step(a.imag, b.imag)
        amplitude = self._amplitude + AMPLITUDE_STEP * _secant_step(a.real, b.real)

        self._history.append((phase, amplitude))
        self._phase = sum(p for p, _ in self._history) / len(self._history)
        self._amplitude = sum(amp for _, amp in self._history) / len(self._history)