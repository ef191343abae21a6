from typing import Optional


class BasewatchError(Exception):
    """Base class for all basewatch errors."""


class ConfigError(BasewatchError):
    pass


class AuthError(BasewatchError):
    """Registry auth negotiation failed (unknown scheme, missing credentials)."""


class TokenFetchError(AuthError):
    """The realm endpoint refused to hand out a bearer token."""


class DigestFetchError(BasewatchError):
    """The registry answered a manifest or tag request with a non-200 status."""

    def __init__(self, status_code: int, message: Optional[str] = None):
        self.status_code = status_code
        super().__init__(message or f"Registry responded with status {status_code}")


class ProtocolError(BasewatchError):
    """The registry answered successfully but broke the v2 protocol contract."""


class PullError(BasewatchError):
    """The daemon reported an error while pulling an image."""


class PullTimeoutError(PullError):
    """An image pull did not finish inside its time bound."""


class RebuildFailedError(BasewatchError):
    """The helper container failed or its exit status can not be trusted."""


class StaleSnapshotError(BasewatchError):
    """A rebuild trigger referenced an update snapshot that is no longer current."""


class FilterError(BasewatchError):
    pass
