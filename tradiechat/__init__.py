"""TradieChat: real-time chat core for a builder/tradie marketplace."""

__version__ = "0.1.0"
