"""pairchat: real-time one-to-one chat engine."""

__version__ = "0.1.0"
