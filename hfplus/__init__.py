"""Host library for Airspy HF+ class receivers: control, streaming and IQ correction."""

__version__ = "1.8.0"
__all__ = ["protocol", "transport", "discovery", "iqbalancer", "dsp", "streaming", "device"]