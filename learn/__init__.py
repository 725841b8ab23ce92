"""Learn: a small course catalog with progress tracking and video lessons."""

__version__ = "0.1.0"
