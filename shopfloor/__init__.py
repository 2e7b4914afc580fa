"""Production scheduling engine for a discrete-manufacturing shop floor."""

__version__ = "0.1.0"
