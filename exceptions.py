class VPNBotError(Exception):
    """Base class for errors the bot and download server render to users."""


class LinkNotFound(VPNBotError):
    pass


class LinkExpired(VPNBotError):
    pass


class UsageExceeded(VPNBotError):
    pass


class AlreadyApproved(VPNBotError):
    pass


class RequestAlreadyPending(VPNBotError):
    pass


class UpstreamUnavailable(VPNBotError):
    """Every candidate endpoint of the panel failed."""


class MalformedUpstreamResponse(VPNBotError):
    """The panel answered with a shape we do not recognize."""


class InvalidConfigFormat(VPNBotError):
    """Downloaded text is not a usable client configuration."""


class StorageFault(VPNBotError):
    """The database rejected or failed an operation."""
