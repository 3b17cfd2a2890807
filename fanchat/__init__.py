"""Fanchat: time-gated direct messaging between a creator and their fans."""

__version__ = "1.0.0"
