# hfplus

A Python host library for Airspy HF+ class receivers. It speaks the
receiver's vendor control protocol, streams IQ samples from the bulk
endpoint on background threads and does the host-side signal processing:
int16 to float conversion with filter-gain compensation, DC removal,
adaptive IQ imbalance correction for zero-IF sample rates, and fine tuning
by a complex oscillator.

## Installation

```
pip install hfplus
```

numpy is the only runtime dependency.

## Modules

- `hfplus.protocol` – request codes (`VendorRequest`), enums (`ReceiverMode`,
  `BoardId`, `UserOutput`, `UserOutputState`), the `AirspyHFError` and
  `UnsupportedError` exceptions, `lib_version()`, and the `PartIdSerialNo`
  and `FlashConfig` records with their byte encodings.
- `hfplus.transport` – the abstract `UsbBackend` and `UsbHandle` interfaces,
  `DeviceDescriptor`, and `configure_handle()`.
- `hfplus.discovery` – `parse_serial()`, `list_devices()`, `open_handle()`
  and `open_handle_fd()`.
- `hfplus.iqbalancer` – the `IQBalancer` and its helpers `fft_window()`,
  `boost_window()` and `shifted_fft()`.
- `hfplus.dsp` – `samples_from_bytes()`, `convert_samples()` and `FineTuner`.
- `hfplus.streaming` – `SampleBlock`, the bounded `SampleQueue` and the
  threaded `StreamWorker`.
- `hfplus.device` – `AirspyHF`, the receiver itself.

## Usage

```python
from hfplus.device import AirspyHF
from hfplus.discovery import list_devices

backend = MyUsbBackend()          # your implementation of hfplus.transport.UsbBackend

print([hex(s) for s in list_devices(backend, 8)])

def on_samples(block):
    # block.samples is a complex64 numpy array of output_size() samples
    print(block.sample_count, block.dropped_samples)
    return False                  # a true value stops streaming

with AirspyHF.open(backend) as radio:      # no serial (or 0): first receiver found
    print(radio.samplerates(), radio.att_steps())
    radio.set_samplerate(768000)           # by value, or by index into samplerates()
    radio.set_freq(7_100_000)
    radio.set_att(0.0)
    radio.start(on_samples)
    ...
    radio.stop()
```

Failures reported by the receiver or the backend raise
`hfplus.protocol.AirspyHFError`. `AirspyHF.open_fd` raises
`UnsupportedError` when the backend cannot wrap file descriptors.

### Calibration

`set_calibration(ppb)`, `set_vctcxo_calibration(vc)` and
`set_frontend_options(flags)` change the running values;
`flash_configuration()` stores them in the receiver, and they are read back
the next time it is opened. Flashing is refused while streaming.

### IQ correction

`set_optimal_iq_correction_point(w)` (clamped to -0.5 … 0.5 of the band)
focuses the image rejection on one part of the spectrum, and
`iq_balancer_configure(...)` sets how much data the estimator integrates.
`set_lib_dsp(False)` turns off IQ correction, IF shift and fine tuning.

The balancer can also be used on its own:

```python
import numpy as np
from hfplus.iqbalancer import IQBalancer

balancer = IQBalancer(0.00006, -0.0045)
corrected = balancer.process(np.zeros(2048, dtype=np.complex64), False)
```

## What it does not do

The package contains no concrete USB backend: it does not talk to a USB
stack itself. You provide a `UsbBackend` that enumerates devices and returns
`UsbHandle` objects performing control and bulk transfers. There are no
command-line tools; everything is used from Python.