"""On-board face verification node for campus shuttle boarding."""

__version__ = "0.1.0"
