"""DropPilot - automated drop farming for live-stream campaigns."""

from .version import __version__


__all__ = ["__version__"]
