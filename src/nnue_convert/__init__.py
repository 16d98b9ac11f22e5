"""Convert trained NNUE weights into quantised engine binaries."""

__version__ = "0.1.0"
