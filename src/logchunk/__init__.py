"""logchunk -- chunked log analysis with cross-chunk pattern validation."""

__version__ = "0.1.0"
