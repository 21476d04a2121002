"""Exception hierarchy shared by the daemon's modules."""


class ProxydError(Exception):
    """Base class for every error raised by proxyd."""


class StoreError(ProxydError):
    """Persistent store could not be read or written."""


class StoreClosedError(StoreError):
    """The store handle was used after close()."""


class ConfigurationInitError(ProxydError):
    """The base configuration could not be written to the store."""


class ServerObjError(ProxydError):
    """A server object could not be built from a share link."""


class UnsupportedProtocolError(ServerObjError):
    """The protocol tag is not one of the supported server kinds."""

    def __init__(self, protocol: str):
        super().__init__(f"unsupported protocol: {protocol!r}")
        self.protocol = protocol


class InvalidLinkError(ServerObjError):
    """The share link is malformed for its protocol."""


class AssetDownloadError(ProxydError):
    """A geo-data asset could not be fetched or installed."""


class RuleListUpdateError(ProxydError):
    """The rule list could not be refreshed."""


class SubscriptionUpdateError(ProxydError):
    """A subscription could not be refreshed."""


class VersionCheckError(ProxydError):
    """The remote release could not be queried."""


class EnvironmentCheckError(ProxydError):
    """The process environment is unusable."""


class EngineError(ProxydError):
    """The proxy core could not be configured, started or stopped."""


class ServeError(ProxydError):
    """The management service stopped with an error."""
