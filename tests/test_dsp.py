import struct

import numpy as np
import pytest

from hfplus.dsp import FineTuner, convert_samples, samples_from_bytes


def test_samples_from_bytes_orders_imaginary_first():
    data = struct.pack("<hhhh", 100, -200, -32768, 32767)
    samples = samples_from_bytes(data)
    assert samples.dtype == np.complex64
    assert list(samples) == [complex(-200, 100), complex(32767, -32768)]


def test_samples_from_bytes_rejects_partial_sample():
    with pytest.raises(ValueError):
        samples_from_bytes(b"\x00\x01\x02")


def test_samples_from_bytes_empty():
    assert samples_from_bytes(b"").size == 0


def test_convert_samples_full_scale():
    data = struct.pack("<hh", 16384, -32768)
    result = convert_samples(data, 1.0)
    assert result[0] == complex(-1.0, 0.5)


def test_convert_samples_applies_gain():
    data = struct.pack("<hhhh", 1000, 2000, -3000, 4000)
    plain = convert_samples(data, 1.0)
    halved = convert_samples(data, 0.5)
    assert np.allclose(halved, plain * 0.5)


def test_convert_samples_accepts_array():
    data = struct.pack("<hhhh", 7, 9, -5, 11)
    from_bytes = convert_samples(data, 2.0)
    from_array = convert_samples(samples_from_bytes(data), 2.0)
    assert np.array_equal(from_bytes, from_array)
    assert from_array.dtype == np.complex64


def test_fine_tuner_zero_shift_is_identity():
    tuner = FineTuner()
    samples = np.array([1 + 2j, 3 - 4j], dtype=np.complex64)
    out = tuner.apply(samples, 0, 768000)
    assert np.array_equal(out, samples)
    assert tuner.vector == 1 + 0j


def test_fine_tuner_quarter_rate_rotation():
    tuner = FineTuner()
    out = tuner.apply(np.ones(4, dtype=np.complex128), 1000.0, 4000.0)
    assert np.allclose(out, [-1j, -1, 1j, 1], atol=1e-9)


def test_fine_tuner_preserves_magnitude():
    tuner = FineTuner()
    rng = np.random.default_rng(1)
    samples = (rng.standard_normal(512) + 1j * rng.standard_normal(512)).astype(
        np.complex64
    )
    out = tuner.apply(samples, 1234.5, 768000)
    assert out.dtype == np.complex64
    assert np.allclose(np.abs(out), np.abs(samples), rtol=1e-5)


def test_fine_tuner_is_continuous_across_blocks():
    rng = np.random.default_rng(2)
    samples = rng.standard_normal(300) + 1j * rng.standard_normal(300)
    split = FineTuner()
    first = split.apply(samples[:100], -2500.0, 192000)
    second = split.apply(samples[100:], -2500.0, 192000)
    whole = FineTuner().apply(samples, -2500.0, 192000)
    assert np.allclose(np.concatenate([first, second]), whole, atol=1e-9)


def test_fine_tuner_reset_restarts_phase():
    tuner = FineTuner()
    samples = np.ones(16, dtype=np.complex128)
    first = tuner.apply(samples, 300.0, 48000)
    tuner.reset()
    assert tuner.vector == 1 + 0j
    assert np.allclose(tuner.apply(samples, 300.0, 48000), first)


def test_fine_tuner_rejects_bad_samplerate():
    with pytest.raises(ValueError):
        FineTuner().apply(np.ones(2, dtype=np.complex64), 10.0, 0)