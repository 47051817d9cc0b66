"""Sample conversion and fine tuning applied to each block from the receiver."""

from __future__ import annotations

import numpy as np

_SCALE = 1.0 / 32768
_RAW_DTYPE = np.dtype([("im", "<i2"), ("re", "<i2")])


def samples_from_bytes(data) -> np.ndarray:
    """Decode raw USB bytes into unscaled complex samples.

    Each sample is four bytes: the imaginary part followed by the real part,
    both signed 16-bit little-endian integers.
    """
    raw = bytes(data)
    if len(raw) % _RAW_DTYPE.itemsize:
        raise ValueError(
            f"raw sample data must be a multiple of {_RAW_DTYPE.itemsize} bytes, "
            f"got {len(raw)}"
        )
    pairs = np.frombuffer(raw, dtype=_RAW_DTYPE)
    samples = np.empty(pairs.shape[0], dtype=np.complex64)
    samples.real = pairs["re"]
    samples.imag = pairs["im"]
    return samples


def convert_samples(raw, filter_gain: float = 1.0) -> np.ndarray:
    """Scale raw samples to floats in [-1, 1) and apply the filter gain.

    ``raw`` is either the bytes received from the device or an array of
    unscaled complex samples. The result is complex64.
    """
    if isinstance(raw, (bytes, bytearray, memoryview)):
        samples = samples_from_bytes(raw)
    else:
        samples = np.asarray(raw, dtype=np.complex64).reshape(-1)
    gain = np.float32(_SCALE * float(filter_gain))
    return (samples * gain).astype(np.complex64, copy=False)


class FineTuner:
    """Shifts a stream in frequency by mixing it with a running phasor.

    The phasor carries over from one block to the next, so consecutive
    blocks are shifted without a phase jump.
    """

    def __init__(self) -> None:
        self._vec = 1 + 0j

    @property
    def vector(self) -> complex:
        """The phasor applied to the last sample processed."""
        return self._vec

    def reset(self) -> None:
        """Restart the phasor at zero phase."""
        self._vec = 1 + 0j

    def apply(self, samples, freq_shift: float, samplerate: float) -> np.ndarray:
        """Shift ``samples`` down by ``freq_shift`` hertz and return a new array.

        A shift of zero leaves the samples, and the phasor, unchanged.
        """
        data = np.asarray(samples).reshape(-1)
        out_dtype = data.dtype if np.iscomplexobj(data) else np.dtype(np.complex64)
        if freq_shift == 0 or data.size == 0:
            return data.astype(out_dtype, copy=True)
        if samplerate <= 0:
            raise ValueError(f"sample rate must be positive, got {samplerate}")

        angle = 2.0 * np.pi * float(freq_shift) / float(samplerate)
        phasors = self._vec * np.exp(-1j * angle * np.arange(1, data.size + 1))
        last = complex(phasors[-1])
        self._vec = last / abs(last)
        return (data.astype(np.complex128) * phasors).astype(out_dtype)