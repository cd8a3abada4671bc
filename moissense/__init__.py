"""MoisSense Gateway - sync and command client for the MoisSense irrigation node."""

from moissense.version import VERSION as __version__

__all__ = ['__version__']
