# MoisSense Gateway - Error Taxonomy
# Polling errors end up in ConnectivityStatus, command errors in CommandOutcome


class MoisSenseError(Exception):
    """Base class for all gateway errors."""


class TransportError(MoisSenseError):
    """The remote node could not be reached (connection refused, DNS, timeout)."""


class ProtocolError(MoisSenseError):
    """The remote node answered with something we cannot parse."""


class ModeError(MoisSenseError):
    """Command refused locally: Auto mode is active or the node is disconnected."""


class BusyError(MoisSenseError):
    """Command refused locally: another command is still pending."""


class DeviceRejected(MoisSenseError):
    """The node received the command but reported that it failed."""
