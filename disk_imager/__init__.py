"""Block device imaging: partition-aware backup, restore and verification."""

from .__version__ import __version__

__all__ = ["__version__"]
