"""
Error types for Couch Link.

Foreground operations raise these; the string form of each error is the
description handed back to the caller.
"""


class CouchLinkError(Exception):
    """Base class for all Couch Link errors."""


class NoLocalAddress(CouchLinkError):
    """No non-loopback network address is available to advertise."""

    def __init__(self, message: str = "No non-loopback IPs found for advertisement"):
        super().__init__(message)


class InvalidServiceParams(CouchLinkError):
    """Service type or instance name is not valid for DNS-SD."""


class BuildFailed(CouchLinkError):
    """The network layer rejected an advertisement or a watch."""


class ShutdownFailed(CouchLinkError):
    """Withdrawing an advertisement or a watch reported an error."""


class PortUnavailable(CouchLinkError):
    """No ephemeral port could be bound for the command server."""


class MalformedCommand(CouchLinkError):
    """A command-channel message could not be parsed or is incomplete."""


class MalformedRequest(CouchLinkError):
    """A control API request body is missing fields or has the wrong types."""


class ShuttingDown(CouchLinkError):
    """The host is shutting down and refuses to start new resources."""

    def __init__(self, message: str = "Shutdown in progress"):
        super().__init__(message)
