"""drillqueue: interleaved spaced-repetition study sessions."""

__version__ = "1.0.0"
